"""Annotate mutations and partition them into retained and excluded.

Every input mutation ends up in exactly one of two tables: the
annotated mutations kept for the analysis, or the exclusion ledger
with one of the reasons 'duplicate', 'unannotated', 'hypermutator' or
'over_cap'. The retained mutations are then summarised into one
:class:`~seldnds.gene_counts.GeneCountTable` per gene.
"""

import math
import logging

from dataclasses import dataclass

import numpy as np
import pandas as pd

from . import constants
from .compute_mutation_burden import (count_mutation_burden,
                                      find_hypermutators)
from .exceptions import AnnotationGap, InputError
from .gene_counts import build_count_tables
from .mutations import mutations_from_frame, mutations_to_frame


logger = logging.getLogger(__name__)


# Fraction of SNVs with a wrong reference base above which the
# mutations probably come from another genome build.
max_reference_mismatch_fraction = 0.1

_event_columns = ["chromosome", "position", "ref", "mut"]

excluded_columns = ["mutation_id", "sample_id", "chromosome", "position",
                    "ref", "mut", "reason", "detail"]


@dataclass(frozen=True)
class AnnotationResult:
    """Output of :func:`annotate_mutations`.

    Attributes
    ----------
    count_tables : dict[str, GeneCountTable]
        One table per gene in scope, including genes without mutations.
    annotated : pd.DataFrame
        Retained mutations with 'gene_id', 'trinucleotide' and
        'consequence' columns.
    excluded : pd.DataFrame
        Excluded mutations with a 'reason' and a 'detail'.
    excluded_samples : pd.DataFrame
        Samples removed as hypermutators.
    n_reference_mismatches : int
    """

    count_tables: dict
    annotated: pd.DataFrame
    excluded: pd.DataFrame
    excluded_samples: pd.DataFrame
    n_reference_mismatches: int = 0


def _exclude(df, reason, details):
    out = df[["mutation_id", "sample_id"] + _event_columns].copy()
    out["reason"] = reason
    out["detail"] = list(details)
    return out


def remove_duplicates(df):
    """Split off repeated genomic events, keeping the first occurrence.

    Returns
    -------
    kept, excluded : pd.DataFrame
    """
    is_dup = df.duplicated(subset=_event_columns, keep="first")
    if not is_dup.any():
        return df, _exclude(df.iloc[:0], "duplicate", [])

    first_id = (df.groupby(_event_columns, sort=False)["mutation_id"]
                .transform("first"))
    details = [f"same event as mutation {i}" for i in first_id[is_dup]]
    logger.warning(
        f"{is_dup.sum()} duplicated mutations found (same chromosome, "
        "position and alleles); only the first occurrence is kept")
    return df[~is_dup], _exclude(df[is_dup], "duplicate", details)


def annotate_frame(df, service):
    """Annotate each mutation of `df` with `service`.

    Returns
    -------
    annotated, unannotated : pd.DataFrame
    n_mismatches : int
        Number of reference base mismatches.
    """
    logger.info(f"Annotating {len(df)} mutations...")
    records = []
    failures = []
    n_mismatches = 0
    for row in df.itertuples(index=False):
        try:
            ann = service.annotate_position(
                row.chromosome, row.position, row.ref, row.mut)
        except AnnotationGap as e:
            failures.append((row.mutation_id, str(e)))
        except InputError as e:
            n_mismatches += 1
            failures.append((row.mutation_id, str(e)))
        else:
            records.append((row.mutation_id, ann.gene_id, ann.trinucleotide,
                            ann.consequence))

    by_id = df.set_index("mutation_id")
    annotated = by_id.loc[[r[0] for r in records]].reset_index()
    annotated["gene_id"] = [r[1] for r in records]
    annotated["trinucleotide"] = [r[2] for r in records]
    annotated["consequence"] = [r[3] for r in records]

    failed = by_id.loc[[m for m, _ in failures]].reset_index()
    unannotated = _exclude(failed, "unannotated", [d for _, d in failures])

    if len(unannotated):
        logger.warning(
            f"{len(unannotated)} mutations could not be annotated and "
            "were removed")

    n_snvs = int((df["ref"].str.len().eq(1) & df["mut"].str.len().eq(1) &
                  df["ref"].ne("-") & df["mut"].ne("-")).sum())
    if n_snvs and n_mismatches / n_snvs > max_reference_mismatch_fraction:
        logger.warning(
            f"{n_mismatches} of {n_snvs} substitutions do not match the "
            "reference genome. Are the mutations and the reference from "
            "the same genome build?")

    logger.info("... done.")
    return annotated, unannotated, n_mismatches


def remove_hypermutators(annotated, max_coding_muts_per_sample,
                         outlier_sample_threshold):
    """Drop every mutation of hypermutated samples.

    Returns
    -------
    kept, excluded, excluded_samples : pd.DataFrame
    """
    burden = count_mutation_burden(annotated)
    excluded_samples = find_hypermutators(
        burden, max_coding_muts_per_sample, outlier_sample_threshold)

    is_hyper = annotated["sample_id"].isin(excluded_samples["sample_id"])
    reasons = dict(zip(excluded_samples["sample_id"],
                       excluded_samples["reason"]))
    excluded = _exclude(
        annotated[is_hyper], "hypermutator",
        [f"sample {s}: {reasons[s]}"
         for s in annotated.loc[is_hyper, "sample_id"]])
    return annotated[~is_hyper], excluded, excluded_samples


def cap_mutations_per_gene(annotated, max_muts_per_gene_per_sample,
                           random_seed=constants.random_seed):
    """Subsample (sample, gene) groups over the cap.

    Groups are visited in sorted order and subsampled without
    replacement with a generator seeded by `random_seed`, so the
    selection is reproducible.

    Returns
    -------
    kept, excluded : pd.DataFrame
    """
    if math.isinf(max_muts_per_gene_per_sample) or annotated.empty:
        return annotated, _exclude(annotated.iloc[:0], "over_cap", [])

    cap = int(max_muts_per_gene_per_sample)
    rng = np.random.default_rng(random_seed)

    dropped = []
    details = []
    for (sample_id, gene_id), group in annotated.groupby(
            ["sample_id", "gene_id"], sort=True):
        if len(group) <= cap:
            continue
        keep = rng.choice(group.index.to_numpy(), size=cap, replace=False)
        drop = group.index.difference(keep)
        dropped.extend(drop)
        details.extend(
            [f"{len(group)} mutations of sample {sample_id} in {gene_id} "
             f"(cap {cap})"] * len(drop))

    if dropped:
        logger.warning(
            f"{len(dropped)} mutations removed by the cap of {cap} "
            "mutations per gene per sample")

    is_dropped = annotated.index.isin(dropped)
    detail_by_index = dict(zip(dropped, details))
    excluded = _exclude(
        annotated[is_dropped], "over_cap",
        [detail_by_index[i] for i in annotated.index[is_dropped]])
    return annotated[~is_dropped], excluded


def annotate_mutations(
        mutations,
        service,
        gene_list=None,
        *,
        max_muts_per_gene_per_sample=constants.max_muts_per_gene_per_sample,
        max_coding_muts_per_sample=constants.max_coding_muts_per_sample,
        outlier_sample_threshold=constants.outlier_sample_threshold,
        random_seed=constants.random_seed):
    """Annotate mutations and build the per-gene count tables.

    The steps, in order, are: removal of repeated genomic events,
    restriction to `gene_list`, annotation, removal of hypermutated
    samples and the per gene per sample cap.

    Parameters
    ----------
    mutations : list[Mutation] | pd.DataFrame
        Input mutations. A DataFrame is converted with
        :func:`~seldnds.mutations.mutations_from_frame`.
    service : AnnotationService
    gene_list : list[str] | None
        Genes to analyse. Unknown genes raise
        :class:`~seldnds.exceptions.ConfigurationError`.
    max_muts_per_gene_per_sample : float
    max_coding_muts_per_sample : float
    outlier_sample_threshold : float
        Infinite values disable the corresponding filter.
    random_seed : int | None

    Returns
    -------
    AnnotationResult
    """
    if isinstance(mutations, pd.DataFrame):
        mutations = mutations_from_frame(mutations)
    df = mutations_to_frame(mutations)

    if gene_list is not None:
        service = service.restrict(gene_list)
        logger.info(f"Analysis restricted to {len(service.gene_ids)} genes")

    df, duplicates = remove_duplicates(df)
    annotated, unannotated, n_mismatches = annotate_frame(df, service)
    annotated, hypermutated, excluded_samples = remove_hypermutators(
        annotated, max_coding_muts_per_sample, outlier_sample_threshold)
    annotated, over_cap = cap_mutations_per_gene(
        annotated, max_muts_per_gene_per_sample, random_seed)

    annotated = annotated.sort_values("mutation_id").reset_index(drop=True)
    parts = [p for p in (duplicates, unannotated, hypermutated, over_cap)
             if len(p)]
    if parts:
        excluded = (pd.concat(parts, ignore_index=True)
                    .sort_values("mutation_id")
                    .reset_index(drop=True))
    else:
        excluded = pd.DataFrame(columns=excluded_columns)

    logger.info(
        f"{len(annotated)} mutations retained, {len(excluded)} excluded")

    count_tables = build_count_tables(annotated, service)

    return AnnotationResult(count_tables=count_tables,
                            annotated=annotated,
                            excluded=excluded,
                            excluded_samples=excluded_samples,
                            n_reference_mismatches=n_mismatches)
