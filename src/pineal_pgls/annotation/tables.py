"""On-disk cache of two-column mapping tables fetched from BioMart.

Tables are stored as TSV under the cache directory::

    tx2gene_<organism>.tsv     transcript_id  gene_id
    symbols_<organism>.tsv     gene_id        symbol

A cached table is reused while fresh. When it is stale or missing it is
re-fetched; a failed fetch falls back to a stale copy when one exists.
In offline mode nothing is fetched and a missing table is fatal.
"""

import logging
import time
from pathlib import Path
from typing import Callable, Optional

import pandas as pd
import requests

from pineal_pgls.annotation.biomart import BiomartClient, BiomartQueryError
from pineal_pgls.config import CACHE_MAX_AGE_DAYS
from pineal_pgls.errors import MappingTableError

logger = logging.getLogger(__name__)


def _strip_version(ids: pd.Series) -> pd.Series:
    return ids.astype(str).str.strip().str.split(".").str[0]


class MappingTableCache:
    """Fetch-or-read access to transcript->gene and gene->symbol tables.

    Args:
        cache_dir: Directory holding the cached TSV files.
        client: BioMart client used when a table must be fetched. Created
            lazily if not given.
        offline: Never contact BioMart; missing tables raise.
        max_age_days: Cached tables older than this are refreshed.
    """

    def __init__(
        self,
        cache_dir: Path,
        client: Optional[BiomartClient] = None,
        offline: bool = False,
        max_age_days: float = CACHE_MAX_AGE_DAYS,
    ) -> None:
        self.cache_dir = Path(cache_dir)
        self._client = client
        self.offline = offline
        self.max_age_seconds = max_age_days * 24 * 60 * 60

    # -----------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------

    def tx2gene_path(self, organism: str) -> Path:
        return self.cache_dir / f"tx2gene_{organism}.tsv"

    def symbols_path(self, organism: str) -> Path:
        return self.cache_dir / f"symbols_{organism}.tsv"

    def tx2gene(self, organism: str) -> pd.DataFrame:
        """Return the version-stripped transcript -> gene table."""
        df = self._load_or_fetch(
            self.tx2gene_path(organism),
            ["transcript_id", "gene_id"],
            lambda: self.client.transcript_to_gene(organism),
        )
        df = df[(df["transcript_id"] != "") & (df["gene_id"] != "")].copy()
        df["transcript_id"] = _strip_version(df["transcript_id"])
        df["gene_id"] = _strip_version(df["gene_id"])
        return df.drop_duplicates(subset="transcript_id").reset_index(drop=True)

    def symbols(self, organism: str, symbol_attribute: str = "hgnc_symbol") -> pd.DataFrame:
        """Return the raw gene -> symbol table (not yet made injective)."""
        df = self._load_or_fetch(
            self.symbols_path(organism),
            ["gene_id", "symbol"],
            lambda: self.client.gene_symbols(organism, symbol_attribute),
        )
        df = df.copy()
        df["gene_id"] = _strip_version(df["gene_id"])
        return df

    @property
    def client(self) -> BiomartClient:
        if self._client is None:
            self._client = BiomartClient()
        return self._client

    # -----------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------

    def _is_fresh(self, path: Path) -> bool:
        if not path.exists():
            return False
        return time.time() - path.stat().st_mtime < self.max_age_seconds

    def _load_or_fetch(
        self,
        path: Path,
        columns: list,
        fetch: Callable[[], pd.DataFrame],
    ) -> pd.DataFrame:
        if path.exists() and (self.offline or self._is_fresh(path)):
            logger.info("Loading mapping table from cache: %s", path)
            return self._read(path, columns)

        if self.offline:
            raise MappingTableError(
                f"Mapping table {path} is missing and downloads are disabled"
            )

        try:
            df = fetch()
        except (requests.RequestException, BiomartQueryError) as exc:
            if path.exists():
                logger.warning(
                    "Failed to refresh %s (%s); falling back to stale cache", path, exc
                )
                return self._read(path, columns)
            raise MappingTableError(f"Could not fetch mapping table {path.name}: {exc}") from exc

        df = df[columns]
        self._write(path, df)
        logger.info("Cached %d rows to %s", len(df), path)
        return df

    def _read(self, path: Path, columns: list) -> pd.DataFrame:
        df = pd.read_csv(path, sep="\t", dtype=str, keep_default_na=False)
        if list(df.columns[: len(columns)]) != columns:
            df = df.iloc[:, : len(columns)]
            df.columns = columns
        return df[columns]

    def _write(self, path: Path, df: pd.DataFrame) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        df.to_csv(path, sep="\t", index=False)
