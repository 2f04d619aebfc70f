"""Access to external genome annotation: BioMart queries and cached tables."""

from pineal_pgls.annotation.biomart import BiomartClient, BiomartQueryError
from pineal_pgls.annotation.http_utils import RetryPolicy, call_with_retries, create_session
from pineal_pgls.annotation.tables import MappingTableCache

__all__ = [
    "BiomartClient",
    "BiomartQueryError",
    "MappingTableCache",
    "RetryPolicy",
    "call_with_retries",
    "create_session",
]
