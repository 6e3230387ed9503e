"""seldnds: dN/dS estimation of selection in somatic mutation data.

This package annotates point mutations with their trinucleotide
context and coding consequence, fits context dependent substitution
models, estimates per-gene background rates with a negative binomial
regression on gene covariates, and tests every gene for selection
with likelihood ratio tests.

"""

__version__ = "0.1.0"

from seldnds.config import DndsConfig
from seldnds.mutations import Mutation, read_mutations
from seldnds.pipeline import DndsResult, run_dnds
from seldnds.reference import (ReferenceAnnotation, ReferenceGene,
                               load_reference, save_reference)

__all__ = [
    "DndsConfig",
    "DndsResult",
    "Mutation",
    "ReferenceAnnotation",
    "ReferenceGene",
    "load_reference",
    "read_mutations",
    "run_dnds",
    "save_reference",
]
