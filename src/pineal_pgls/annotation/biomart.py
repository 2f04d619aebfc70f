"""
Ensembl BioMart client.

Fetches the mapping tables the harmonization stages need:

- transcript -> gene per organism (aggregation in the quantification loader)
- gene -> symbol for the reference organism (symbol normalizer)
- gene -> reference-organism homolog (ortholog fallback)

Queries are XML documents sent to the martservice endpoint; results come
back as headerless TSV.
"""

import logging
import time
from io import StringIO
from typing import Dict, List, Optional, Sequence

import pandas as pd
import requests

from pineal_pgls.annotation.http_utils import create_session
from pineal_pgls.config import DEFAULT_BIOMART_URL

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 600

_QUERY_TEMPLATE = """<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE Query>
<Query virtualSchemaName="default" formatter="TSV" header="0" uniqueRows="1" count="" datasetConfigVersion="0.6">
    <Dataset name="{dataset}" interface="default">
{filters}{attributes}
    </Dataset>
</Query>"""


class BiomartQueryError(Exception):
    """Raised when BioMart returns an error document or malformed rows."""

    pass


def dataset_name(organism: str) -> str:
    """Return the Ensembl gene dataset for an organism code.

    >>> dataset_name("hsapiens")
    'hsapiens_gene_ensembl'
    """
    return f"{organism}_gene_ensembl"


def build_query(
    dataset: str,
    attributes: Sequence[str],
    filters: Optional[Dict[str, Sequence[str]]] = None,
) -> str:
    """Generate a BioMart XML query."""
    filter_lines = ""
    for name, values in (filters or {}).items():
        filter_lines += f'        <Filter name="{name}" value="{",".join(values)}"/>\n'
    attribute_lines = "\n".join(
        f'        <Attribute name="{name}"/>' for name in attributes
    )
    return _QUERY_TEMPLATE.format(
        dataset=dataset, filters=filter_lines, attributes=attribute_lines
    )


class BiomartClient:
    """Thin client for the Ensembl BioMart martservice.

    Example:
        client = BiomartClient()
        tx2gene = client.transcript_to_gene("mmusculus")
    """

    def __init__(
        self,
        url: str = DEFAULT_BIOMART_URL,
        session: Optional[requests.Session] = None,
        timeout: int = DEFAULT_TIMEOUT,
    ):
        self.url = url
        self.session = session or create_session()
        self.timeout = timeout

    def query(
        self,
        dataset: str,
        attributes: List[str],
        filters: Optional[Dict[str, Sequence[str]]] = None,
    ) -> pd.DataFrame:
        """Run a query and return the rows as a string DataFrame.

        Raises:
            requests.RequestException: On transport failure after retries.
            BiomartQueryError: If BioMart reports a query error.
        """
        xml_query = build_query(dataset, attributes, filters)
        logger.info("Querying BioMart %s for %s", dataset, ", ".join(attributes))
        start = time.time()

        response = self.session.get(
            self.url, params={"query": xml_query}, timeout=self.timeout
        )
        response.raise_for_status()

        text = response.text
        if text.startswith("Query ERROR") or "ERROR" in text[:200]:
            raise BiomartQueryError(f"BioMart error: {text[:500]}")

        if not text.strip():
            df = pd.DataFrame(columns=attributes)
        else:
            df = pd.read_csv(
                StringIO(text),
                sep="\t",
                header=None,
                names=attributes,
                dtype=str,
                keep_default_na=False,
            )
        logger.info("  Got %d rows in %.1fs", len(df), time.time() - start)
        return df

    def transcript_to_gene(self, organism: str) -> pd.DataFrame:
        """Return ``transcript_id``/``gene_id`` pairs for an organism."""
        df = self.query(
            dataset_name(organism),
            ["ensembl_transcript_id", "ensembl_gene_id"],
        )
        df.columns = ["transcript_id", "gene_id"]
        return df

    def gene_symbols(
        self, organism: str, symbol_attribute: str = "hgnc_symbol"
    ) -> pd.DataFrame:
        """Return ``gene_id``/``symbol`` pairs for an organism."""
        df = self.query(
            dataset_name(organism),
            ["ensembl_gene_id", symbol_attribute],
        )
        df.columns = ["gene_id", "symbol"]
        return df

    def homologs(
        self,
        organism: str,
        reference_organism: str,
    ) -> pd.DataFrame:
        """Return ``source``/``target``/``orthology_type`` homology rows.

        ``source`` is the organism's gene id and ``target`` the reference
        organism's gene id. Genes without a homolog are omitted.
        """
        df = self.query(
            dataset_name(organism),
            [
                "ensembl_gene_id",
                f"{reference_organism}_homolog_ensembl_gene",
                f"{reference_organism}_homolog_orthology_type",
            ],
        )
        df.columns = ["source", "target", "orthology_type"]
        return df[df["target"].str.strip() != ""].reset_index(drop=True)
