"""Tests for mutation annotation and exclusion."""

import logging

import numpy as np
import pandas as pd
import pytest

from seldnds.compute_mutation_burden import (count_mutation_burden,
                                             find_hypermutators)
from seldnds.constants import complement
from seldnds.exceptions import ConfigurationError
from seldnds.mutations import Mutation, mutations_from_frame
from seldnds.variant_annotation import annotate_mutations


INF = float("inf")


def _no_filters(**kwargs):
    opts = dict(max_muts_per_gene_per_sample=INF,
                max_coding_muts_per_sample=INF,
                outlier_sample_threshold=INF)
    opts.update(kwargs)
    return opts


def _forward(gene, position, ref, alt, sample):
    if gene.strand == -1:
        ref, alt = complement(ref), complement(alt)
    return Mutation(sample, gene.chromosome, position, ref, alt)


@pytest.fixture
def catalogue(small_reference, simulate):
    return simulate(small_reference, rate=0.1, n_samples=5)


def test_partition_is_total_and_disjoint(small_reference, catalogue):
    mutations = list(catalogue)
    # duplicate event in another sample
    first = mutations[0]
    mutations.append(Mutation("OTHER", first.chromosome, first.position,
                              first.ref, first.mut))
    # outside every gene
    mutations.append(Mutation("S000", "1", 5, "A", "C"))
    # wrong reference base
    bad_ref = next(b for b in "ACGT" if b not in (first.ref, first.mut))
    mutations.append(Mutation("S001", first.chromosome, first.position,
                              bad_ref, first.mut))
    # hypermutated sample, one new event per coding position
    seen = {m.event_key for m in catalogue}
    hyper = []
    for gene in small_reference.genes:
        for position, ref, alt, _, _ in list(gene.iter_substitutions())[::3]:
            m = _forward(gene, position, ref, alt, "HYPER")
            if m.event_key not in seen:
                hyper.append(m)
    mutations.extend(hyper[:400])

    result = annotate_mutations(
        mutations, small_reference, max_muts_per_gene_per_sample=3,
        max_coding_muts_per_sample=200)

    retained = set(result.annotated["mutation_id"])
    excluded = set(result.excluded["mutation_id"])
    assert not retained & excluded
    assert retained | excluded == set(range(len(mutations)))
    assert set(result.excluded["reason"]) <= {
        "duplicate", "unannotated", "hypermutator", "over_cap"}

    reasons = result.excluded.set_index("mutation_id")["reason"]
    assert reasons[len(catalogue)] == "duplicate"
    assert reasons[len(catalogue) + 1] == "unannotated"
    assert reasons[len(catalogue) + 2] == "unannotated"
    assert "HYPER" in set(result.excluded_samples["sample_id"])
    assert result.n_reference_mismatches == 1


def test_disabled_thresholds_keep_deduplicated_input(small_reference,
                                                     catalogue):
    mutations = catalogue + catalogue[:5]
    result = annotate_mutations(mutations, small_reference, **_no_filters())

    assert len(result.annotated) == len(catalogue)
    assert list(result.excluded["reason"].unique()) == ["duplicate"]
    assert result.excluded_samples.empty


def test_duplicates_warn(small_reference, catalogue, caplog):
    with caplog.at_level(logging.WARNING):
        annotate_mutations(catalogue + catalogue[:1], small_reference,
                           **_no_filters())
    assert "duplicated" in caplog.text


def test_cap_per_gene_per_sample(small_reference):
    gene = small_reference[small_reference.gene_ids[0]]
    sites = list(gene.iter_substitutions())[::9][:5]
    mutations = [_forward(gene, position, ref, alt, "S1")
                 for position, ref, alt, _, _ in sites]

    result = annotate_mutations(
        mutations, small_reference,
        **_no_filters(max_muts_per_gene_per_sample=3))
    again = annotate_mutations(
        mutations, small_reference,
        **_no_filters(max_muts_per_gene_per_sample=3))

    assert len(result.annotated) == 3
    assert (result.excluded["reason"] == "over_cap").sum() == 2
    pd.testing.assert_frame_equal(result.annotated, again.annotated)


def test_gene_list_restricts_tables(small_reference, catalogue):
    genes = small_reference.gene_ids[:2]
    result = annotate_mutations(catalogue, small_reference, genes,
                                **_no_filters())

    assert list(result.count_tables) == genes
    assert set(result.annotated["gene_id"]) <= set(genes)
    outside = result.excluded[result.excluded["reason"] == "unannotated"]
    assert len(outside) > 0

    with pytest.raises(ConfigurationError):
        annotate_mutations(catalogue, small_reference, ["UNKNOWN"])


def test_count_tables_match_annotation(small_reference, catalogue):
    result = annotate_mutations(catalogue, small_reference, **_no_filters())
    annotated = result.annotated

    assert len(result.count_tables) == len(small_reference)
    for gene_id, table in result.count_tables.items():
        rows = annotated[annotated["gene_id"] == gene_id]
        counts = rows["consequence"].value_counts()
        np.testing.assert_array_equal(
            table.class_counts,
            [counts.get(c, 0) for c in ["synonymous", "missense",
                                        "nonsense", "essential_splice"]])
        assert table.n_indels == counts.get("indel", 0)


def test_mutation_table_loader_skips_malformed():
    df = pd.DataFrame({
        "sampleID": ["a", "b", "c", "d"],
        "chr": ["chr1", "1", "1", "1"],
        "pos": ["10", "0", "12", "13"],
        "ref": ["A", "C", "N", "G"],
        "mut": ["T", "T", "A", "G"],
    })
    mutations = mutations_from_frame(df)
    assert len(mutations) == 1
    assert mutations[0].chromosome == "1"
    assert mutations[0].position == 10


def test_hypermutators():
    annotated = pd.DataFrame({
        "sample_id": ["a"] * 2 + ["b"] * 3 + ["c"] * 40,
        "consequence": ["synonymous"] * 45,
    })
    burden = count_mutation_burden(annotated)
    assert burden.loc["c", "coding_mutations"] == 40

    assert find_hypermutators(burden, INF).empty
    by_cap = find_hypermutators(burden, 30)
    assert list(by_cap["sample_id"]) == ["c"]
    by_outlier = find_hypermutators(burden, INF, 5)
    assert list(by_outlier["sample_id"]) == ["c"]
