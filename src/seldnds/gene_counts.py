"""Per-gene tables of observed substitutions and opportunities.

For each gene we keep two 192 x 4 matrices, indexed by strand oriented
trinucleotide substitution and impact class (synonymous, missense,
nonsense, essential splice): the observed counts N and the number of
possible substitutions L. Pooling them across genes gives the input of
the global substitution model; multiplying L by fitted neutral rates
gives the per-gene expected counts.
"""

import logging

from dataclasses import dataclass

import numpy as np
import pandas as pd

from . import constants


logger = logging.getLogger(__name__)


_impact_column = {c: i for i, c in enumerate(constants.impact_classes)}


def _read_only(array):
    array = np.array(array, dtype=float)
    array.setflags(write=False)
    return array


@dataclass(frozen=True)
class GeneCountTable:
    """Observed counts and opportunities of one gene."""

    gene_id: str
    observed: np.ndarray
    opportunities: np.ndarray
    n_indels: int
    coding_length: int

    def __post_init__(self):
        shape = (constants.n_substitution_types, constants.n_impact_classes)
        for name in ("observed", "opportunities"):
            value = _read_only(getattr(self, name))
            if value.shape != shape:
                raise ValueError(
                    f"{name} of {self.gene_id} must have shape {shape}, "
                    f"got {value.shape}")
            object.__setattr__(self, name, value)

    @property
    def class_counts(self):
        """Observed substitutions per impact class."""
        return self.observed.sum(axis=0)

    def expected(self, neutral_rates):
        """Expected neutral substitutions per impact class.

        Parameters
        ----------
        neutral_rates : array of shape (192,)
            Neutral rate per trinucleotide substitution type.
        """
        return np.asarray(neutral_rates) @ self.opportunities


def build_count_tables(annotated, service):
    """Build one :class:`GeneCountTable` per gene of `service`.

    Genes without mutations get an all-zero observed matrix.

    Parameters
    ----------
    annotated : pd.DataFrame
        Retained mutations with columns 'gene_id', 'trinucleotide' and
        'consequence'.
    service : AnnotationService

    Returns
    -------
    dict[str, GeneCountTable]
        Keyed by gene, in the order of ``service.gene_ids``.
    """
    logger.info("Building per-gene count tables...")
    gene_ids = service.gene_ids
    observed = {g: np.zeros((constants.n_substitution_types,
                             constants.n_impact_classes))
                for g in gene_ids}
    n_indels = dict.fromkeys(gene_ids, 0)

    for gene_id, label, consequence in annotated[
            ["gene_id", "trinucleotide", "consequence"]].itertuples(
                index=False, name=None):
        if consequence == "indel":
            n_indels[gene_id] += 1
        else:
            i = constants.trinucleotide_substitution_index[label]
            observed[gene_id][i, _impact_column[consequence]] += 1

    tables = {
        g: GeneCountTable(gene_id=g,
                          observed=observed[g],
                          opportunities=service.opportunity_matrix(g),
                          n_indels=n_indels[g],
                          coding_length=service.coding_length(g))
        for g in gene_ids}
    logger.info("... done.")
    return tables


def pool_counts(tables):
    """Sum observed counts and opportunities across genes."""
    shape = (constants.n_substitution_types, constants.n_impact_classes)
    N = np.zeros(shape)
    L = np.zeros(shape)
    for table in tables.values():
        N += table.observed
        L += table.opportunities
    return N, L


def class_totals(tables):
    """Total mutations of each class across genes."""
    N, _ = pool_counts(tables)
    totals = dict(zip(["syn", "mis", "non", "spl"], N.sum(axis=0)))
    totals["indel"] = sum(t.n_indels for t in tables.values())
    return {k: int(v) for k, v in totals.items()}


def counts_frame(tables, neutral_rates=None):
    """Tabulate per-gene class counts.

    Returns a DataFrame indexed by gene with the observed counts
    (``n_syn, n_mis, n_non, n_spl, n_ind``), the coding length and,
    when `neutral_rates` are given, the expected neutral counts
    (``exp_syn, exp_mis, exp_non, exp_spl``).
    """
    gene_ids = list(tables)
    counts = np.array([tables[g].class_counts for g in gene_ids]).reshape(
        len(gene_ids), constants.n_impact_classes)
    df = pd.DataFrame(counts, index=pd.Index(gene_ids, name="gene_id"),
                      columns=constants.count_columns).astype(int)
    df["n_ind"] = [tables[g].n_indels for g in gene_ids]
    df["coding_length"] = [tables[g].coding_length for g in gene_ids]

    if neutral_rates is not None:
        expected = np.array(
            [tables[g].expected(neutral_rates) for g in gene_ids]).reshape(
                len(gene_ids), constants.n_impact_classes)
        for j, col in enumerate(constants.expected_columns):
            df[col] = expected[:, j]

    return df
