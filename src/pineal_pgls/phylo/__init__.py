"""Phylogenetic regression of expression on the trait.

Usage::

    from pineal_pgls.phylo import PhylogeneticTree, run_engine

    tree = PhylogeneticTree.from_newick("species.nwk")
    table = run_engine(filtered, tree, traits)
"""

from pineal_pgls.phylo.engine import (
    benjamini_hochberg,
    build_observation_table,
    check_alignment,
    fit_gene,
    fit_observations,
    run_engine,
)
from pineal_pgls.phylo.pgls import PGLSFit, fit_brownian, fit_lambda
from pineal_pgls.phylo.tree import PhylogeneticTree, pagel_lambda_covariance

__all__ = [
    "PGLSFit",
    "PhylogeneticTree",
    "benjamini_hochberg",
    "build_observation_table",
    "check_alignment",
    "fit_brownian",
    "fit_gene",
    "fit_lambda",
    "fit_observations",
    "pagel_lambda_covariance",
    "run_engine",
]
