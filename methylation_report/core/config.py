#!/usr/bin/env python
# coding: utf-8

"""
Report Configuration
Centralized constants for input paths, analysis thresholds, the remote
gene set and figure rendering
"""

import copy
import json
import os
from datetime import datetime
from typing import Any, Dict, Optional


# ============================================================================
# DEFAULT CONFIGURATION
# ============================================================================

DEFAULT_PATHS = {
    'beta_matrix': 'data/beta_matrix.csv',
    'phenotypes': 'data/phenotypes.csv',
    'genome_reference': 'data/genes.gtf',
    'reference_cache': 'data/cache',
    'output_dir': 'results',
}

DEFAULT_ANALYSIS = {
    'random_seed': 1500,
    'sample_col': 'sample_id',
    'condition_col': 'condition',
    'baseline': 'control',
    'shrink': 'smyth',
    'robust': True,
    'max_d0': 50.0,
    'min_count': 3,
    'pval_threshold': 0.05,
    'logit_offset': 1e-6,
    'promoter_window': [-3000, 3000],
    'downstream_window': 3000,
}

DEFAULT_GENE_SET = {
    'base_url': 'https://maayanlab.cloud/Harmonizome/api/1.0',
    'gene_set': 'extracellular matrix',
    'collection': 'GO Cellular Component Annotations 2023',
    'timeout': 30,
}

DEFAULT_PLOTS = {
    'heatmap': {
        'filename': 'heatmap.png',
        'figsize': [8, 10],
        'dpi': 300,
        'cmap': 'RdBu_r',
    },
    'volcano': {
        'filename': 'volcano.png',
        'figsize': [10, 7],
        'dpi': 300,
        'max_label_loci': 3,
    },
    'diagnostic_dpi': 150,
    'show_plots': False,
}


# ============================================================================
# CONFIGURATION MANAGER
# ============================================================================

class ReportConfig:
    """
    Configuration manager for the methylation report.

    Holds every constant the run needs and loads overrides from JSON.
    """

    def __init__(self, config_file: Optional[str] = None):
        """
        Initialize configuration manager.

        Parameters
        ----------
        config_file : str, optional
            Path to JSON configuration file
        """
        self.paths = copy.deepcopy(DEFAULT_PATHS)
        self.analysis = copy.deepcopy(DEFAULT_ANALYSIS)
        self.gene_set = copy.deepcopy(DEFAULT_GENE_SET)
        self.plots = copy.deepcopy(DEFAULT_PLOTS)

        if config_file and os.path.exists(config_file):
            self.load_from_file(config_file)

    def load_from_file(self, filepath: str):
        """
        Load configuration overrides from a JSON file.

        Unknown top-level sections are ignored; known sections are merged
        key by key into the defaults.
        """
        with open(filepath, 'r') as f:
            config = json.load(f)

        if 'paths' in config:
            self.paths.update(config['paths'])
        if 'analysis' in config:
            self.analysis.update(config['analysis'])
        if 'gene_set' in config:
            self.gene_set.update(config['gene_set'])
        if 'plots' in config:
            for key, value in config['plots'].items():
                if isinstance(value, dict) and isinstance(self.plots.get(key), dict):
                    self.plots[key].update(value)
                else:
                    self.plots[key] = value

    def save_to_file(self, filepath: str):
        """Save current configuration to a JSON file."""
        config = self.to_dict()
        config['last_updated'] = datetime.now().isoformat()

        with open(filepath, 'w') as f:
            json.dump(config, f, indent=2)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'paths': copy.deepcopy(self.paths),
            'analysis': copy.deepcopy(self.analysis),
            'gene_set': copy.deepcopy(self.gene_set),
            'plots': copy.deepcopy(self.plots),
        }

    @property
    def promoter_window(self) -> tuple:
        upstream, downstream = self.analysis['promoter_window']
        if upstream > 0 or downstream < 0:
            raise ValueError(
                f"promoter_window must span the TSS, got {self.analysis['promoter_window']}"
            )
        return int(upstream), int(downstream)

    def output_path(self, *parts: str) -> str:
        """Path under the configured output directory."""
        return os.path.join(self.paths['output_dir'], *parts)


# ============================================================================
# GLOBAL CONFIGURATION INSTANCE
# ============================================================================

_global_config = ReportConfig()


def get_config() -> ReportConfig:
    """
    Get global configuration instance.

    Examples
    --------
    >>> config = get_config()
    >>> config.analysis['pval_threshold']
    0.05
    """
    return _global_config


def load_config(filepath: str):
    """
    Load configuration from a JSON file into the global instance.
    """
    if not filepath.endswith('.json'):
        raise ValueError("Config file must be JSON format")

    _global_config.load_from_file(filepath)


def reset_config():
    """Restore the global instance to the built-in defaults."""
    global _global_config
    _global_config = ReportConfig()


def export_default_config(filepath: str):
    """
    Export the default configuration as an editable template.

    Examples
    --------
    >>> export_default_config('my_report.json')
    >>> # Edit thresholds, then load
    >>> load_config('my_report.json')
    """
    if not filepath.endswith('.json'):
        raise ValueError("Filepath must end with .json")

    ReportConfig().save_to_file(filepath)
