#!/usr/bin/env python
# coding: utf-8

"""
Error taxonomy for the differential methylation report.

Every stage fails fast: these are raised and propagated, never retried.
"""


class MethylationReportError(Exception):
    """Base class for all report errors."""


class InputAlignmentError(MethylationReportError, ValueError):
    """Sample identifiers differ between the beta matrix and phenotype table."""


# Name used by the differential tester
DataAlignmentError = InputAlignmentError


class DegenerateDesignError(MethylationReportError, ValueError):
    """Condition factor cannot support a two-group comparison."""


class MalformedLocusError(MethylationReportError, ValueError):
    """Locus identifier does not parse as ``chrom:start-end``."""


class RemoteServiceError(MethylationReportError):
    """Gene-set service or genome reference unavailable or returned bad content."""


class RenderError(MethylationReportError):
    """Figure could not be written to its output path."""
