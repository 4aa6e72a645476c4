#!/usr/bin/env python
# coding: utf-8

"""
Curated Gene Sets
Fetch a gene set from a Harmonizome-style JSON API and restrict annotated
loci to its members
"""

from typing import FrozenSet, Iterable, Optional
from urllib.parse import quote

import pandas as pd
import requests

from methylation_report.core.exceptions import RemoteServiceError

HARMONIZOME_URL = "https://maayanlab.cloud/Harmonizome/api/1.0"


def gene_set_url(gene_set: str, collection: str, base_url: str = HARMONIZOME_URL) -> str:
    """URL of one gene set within a collection."""
    return (
        f"{base_url.rstrip('/')}/gene_set/"
        f"{quote(gene_set, safe='')}/{quote(collection, safe='')}"
    )


def parse_gene_set(payload: dict) -> FrozenSet[str]:
    """
    Extract gene symbols from a gene-set response body.

    Expects ``{"associations": [{"gene": {"symbol": ...}}, ...]}``.
    """
    if not isinstance(payload, dict) or "associations" not in payload:
        raise RemoteServiceError("Gene-set response has no 'associations' array")

    associations = payload["associations"]
    if not isinstance(associations, list):
        raise RemoteServiceError("Gene-set 'associations' is not an array")

    symbols = set()
    for entry in associations:
        gene = entry.get("gene") if isinstance(entry, dict) else None
        symbol = gene.get("symbol") if isinstance(gene, dict) else None
        if symbol:
            symbols.add(str(symbol))
    return frozenset(symbols)


def fetch_gene_set(
    gene_set: str,
    collection: str,
    base_url: str = HARMONIZOME_URL,
    timeout: float = 30,
    session: Optional[requests.Session] = None,
) -> FrozenSet[str]:
    """
    Download the members of a curated gene set.

    Parameters
    ----------
    gene_set : str
        Gene set name, e.g. ``"extracellular matrix"``
    collection : str
        Source collection the set belongs to
    base_url : str
        API root
    timeout : float
        Seconds to wait for the single request
    session : requests.Session, optional
        Session to issue the request with

    Returns
    -------
    FrozenSet[str]
        Gene symbols in the set

    Raises
    ------
    RemoteServiceError
        On network failure, HTTP error status, a non-JSON content type or
        a body without ``associations``
    """
    url = gene_set_url(gene_set, collection, base_url)
    http = session or requests

    try:
        response = http.get(url, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as e:
        raise RemoteServiceError(f"Gene-set request to {url} failed: {e}") from e

    content_type = response.headers.get("Content-Type", "")
    if "application/json" not in content_type:
        raise RemoteServiceError(
            f"Gene-set service returned '{content_type or 'no content type'}', "
            "expected application/json"
        )

    try:
        payload = response.json()
    except ValueError as e:
        raise RemoteServiceError(f"Gene-set response is not valid JSON: {e}") from e

    genes = parse_gene_set(payload)
    print(f"✔ Retrieved {len(genes):,} genes for '{gene_set}' ({collection})")
    return genes


def filter_by_gene_set(
    annotated: pd.DataFrame,
    genes: Iterable[str],
    gene_col: str = "nearest_gene",
    id_col: str = "locus_id",
) -> pd.DataFrame:
    """
    Keep loci whose nearest gene belongs to ``genes``.

    Matching is exact on gene symbol; loci with a null gene never match.
    Duplicated ``id_col`` rows are collapsed to the first occurrence.
    """
    for col in (gene_col, id_col):
        if col not in annotated.columns:
            raise ValueError(f"annotated table has no '{col}' column")

    members = set(genes)
    keep = annotated[gene_col].notna() & annotated[gene_col].isin(members)
    return annotated[keep].drop_duplicates(subset=id_col, keep="first").copy()
