"""
Species tree handling.

Parses a Newick tree with branch lengths and derives the Brownian-motion
covariance matrix: the covariance of two tips is the length of the path
they share from the root to their most recent common ancestor, and a
tip's variance is its root-to-tip distance.
"""

import logging
from dataclasses import dataclass
from io import StringIO
from pathlib import Path
from typing import Iterable, Tuple, Union

import numpy as np
from Bio import Phylo

from pineal_pgls.errors import PipelineIntegrityError, TipMismatchError

logger = logging.getLogger(__name__)


def shared_path_covariance(tree) -> Tuple[Tuple[str, ...], np.ndarray]:
    """
    Compute tip labels and the shared-branch-length matrix of a tree.

    Args:
        tree: ``Bio.Phylo`` tree with branch lengths on every non-root clade

    Returns:
        Tuple of (tip labels in tree order, n x n covariance matrix)
    """
    terminals = tree.get_terminals()
    tips = tuple(str(t.name) if t.name is not None else "" for t in terminals)
    if any(not name for name in tips):
        raise PipelineIntegrityError("Every tree tip needs a label")
    if len(set(tips)) != len(tips):
        raise PipelineIntegrityError("Tree tip labels are not unique")

    for clade in tree.find_clades():
        if clade is not tree.root and clade.branch_length is None:
            raise PipelineIntegrityError(
                "Tree is missing branch lengths; a dated species tree is required"
            )

    depths = tree.depths()
    root_depth = depths[tree.root]

    n = len(terminals)
    cov = np.zeros((n, n))
    for i in range(n):
        cov[i, i] = depths[terminals[i]] - root_depth
        for j in range(i + 1, n):
            mrca = tree.common_ancestor(terminals[i], terminals[j])
            cov[i, j] = cov[j, i] = depths[mrca] - root_depth
    return tips, cov


def pagel_lambda_covariance(covariance: np.ndarray, lam: float) -> np.ndarray:
    """Scale the off-diagonal (shared history) part of a covariance matrix.

    ``lam = 1`` returns the Brownian matrix, ``lam = 0`` a star phylogeny.
    """
    scaled = covariance * lam
    np.fill_diagonal(scaled, np.diag(covariance))
    return scaled


@dataclass(frozen=True, eq=False)
class PhylogeneticTree:
    """Tip order and covariance of a fixed species tree.

    Holds only plain tuples and arrays so it can be shipped to worker
    processes.
    """

    tip_labels: Tuple[str, ...]
    covariance: np.ndarray
    newick: str = ""

    @classmethod
    def from_newick(cls, source: Union[str, Path]) -> "PhylogeneticTree":
        """Load a tree from a Newick file path or a Newick string."""
        text = str(source)
        if not text.lstrip().startswith("("):
            path = Path(text)
            if not path.exists():
                raise PipelineIntegrityError(f"Tree file not found: {path}")
            text = path.read_text()

        tree = Phylo.read(StringIO(text.strip()), "newick")
        tips, cov = shared_path_covariance(tree)
        cov.setflags(write=False)
        logger.info("Loaded tree with %d tips: %s", len(tips), ", ".join(tips))
        return cls(tip_labels=tips, covariance=cov, newick=text.strip())

    @property
    def n_tips(self) -> int:
        return len(self.tip_labels)

    def validate_tips(self, species: Iterable[str]) -> None:
        """Require the tip set to equal the expression species set exactly."""
        species = set(species)
        tips = set(self.tip_labels)
        if species != tips:
            only_tree = sorted(tips - species)
            only_data = sorted(species - tips)
            raise TipMismatchError(
                "Tree tips do not match expression species "
                f"(only in tree: {only_tree or '-'}; only in data: {only_data or '-'})"
            )
