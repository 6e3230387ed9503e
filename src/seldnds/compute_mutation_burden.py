"""Mutation burden.

Coding mutation burden per sample and detection of hypermutated
samples, which are removed before any rate is estimated.

"""

import math
import logging

import pandas as pd


logger = logging.getLogger(__name__)


def count_mutation_burden(annotated):
    """Count coding and synonymous mutations per sample.

    This function groups an annotated mutation DataFrame by sample and
    computes:

    - The number of coding mutations (every annotated mutation,
      including essential splice sites and indels) per sample.
    - The number of synonymous mutations per sample.


    Parameters
    ----------
    annotated : pd.DataFrame
        A DataFrame of annotated mutations with at least the columns
        'sample_id' and 'consequence'.


    Returns
    -------
    mutation_counts : pd.DataFrame
        A DataFrame indexed by 'sample_id' with two columns:
        - coding_mutations : int
            Number of coding mutations in each sample.
        - synonymous_mutations : int
            Number of synonymous mutations in each sample.

    """
    coding_counts = annotated.groupby(
        'sample_id').size().rename('coding_mutations')

    synonymous = annotated[annotated['consequence'] == 'synonymous']

    synonymous_counts = synonymous.groupby(
        'sample_id').size().rename('synonymous_mutations')

    mutation_counts = pd.concat(
        [coding_counts, synonymous_counts],
        axis=1).fillna(0).astype(int)
    mutation_counts.index.name = 'sample_id'

    return mutation_counts


def find_hypermutators(burden, max_coding_muts_per_sample,
                       outlier_sample_threshold=float("inf")):
    """Find samples whose coding burden is too high to be modelled.

    A sample is excluded when its coding burden exceeds
    `max_coding_muts_per_sample`, or exceeds `outlier_sample_threshold`
    times the median coding burden of the cohort. Infinite thresholds
    disable the corresponding rule.

    Parameters
    ----------
    burden : pd.DataFrame
        Output of :func:`count_mutation_burden`.
    max_coding_muts_per_sample : float
    outlier_sample_threshold : float

    Returns
    -------
    pd.DataFrame
        One row per excluded sample with columns 'sample_id',
        'n_coding_mutations' and 'reason'.
    """
    columns = ['sample_id', 'n_coding_mutations', 'reason']
    if burden.empty:
        return pd.DataFrame(columns=columns)

    coding = burden['coding_mutations']
    median = coding.median()

    rows = []
    for sample_id, n in coding.items():
        if n > max_coding_muts_per_sample:
            rows.append((sample_id, int(n),
                         f"more than {max_coding_muts_per_sample:g} coding "
                         "mutations"))
        elif (not math.isinf(outlier_sample_threshold) and
              n > outlier_sample_threshold * median):
            rows.append((sample_id, int(n),
                         f"more than {outlier_sample_threshold:g} times the "
                         f"median burden ({median:g})"))

    excluded = pd.DataFrame(rows, columns=columns)

    if len(excluded):
        logger.warning(
            f"{len(excluded)} samples excluded as hypermutators "
            f"({excluded['n_coding_mutations'].sum()} coding mutations)")
    else:
        logger.debug("No hypermutated samples found")

    return excluded
