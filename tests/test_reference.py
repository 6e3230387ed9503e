"""Tests for the reference annotation service."""

import numpy as np
import pandas as pd
import pytest

from seldnds.constants import reverse_complement
from seldnds.exceptions import AnnotationGap, ConfigurationError, InputError
from seldnds.reference import (ReferenceAnnotation, ReferenceGene,
                               build_reference, codon_change_consequence,
                               load_reference, save_reference)


# ATG TGG AAA TAA flanked by TT on both sides; CDS at 3..14
GENOME = "TT" + "ATGTGGAAATAA" + "TT"


@pytest.fixture
def plus_gene():
    return ReferenceGene.from_genome("G1", "chr1", 1, [(3, 14)], GENOME)


@pytest.fixture
def minus_gene():
    return ReferenceGene.from_genome(
        "G1", "1", -1, [(3, 14)], reverse_complement(GENOME))


def test_codon_consequences():
    assert codon_change_consequence("TGG", 2, "A") == "nonsense"
    assert codon_change_consequence("TGG", 0, "A") == "missense"
    assert codon_change_consequence("AAA", 2, "G") == "synonymous"
    # stop to stop is synonymous, stop loss is missense
    assert codon_change_consequence("TAA", 1, "G") == "synonymous"
    assert codon_change_consequence("TAA", 0, "C") == "missense"


def test_plus_strand_sequences(plus_gene):
    assert plus_gene.chromosome == "1"
    assert plus_gene.seq_cds == "ATGTGGAAATAA"
    assert plus_gene.seq_cds1up == "TATGTGGAAATA"
    assert plus_gene.seq_cds1down == "TGTGGAAATAAT"
    assert plus_gene.coding_length == 12


def test_plus_strand_annotation(plus_gene):
    ann = plus_gene.annotate(6, "T", "A")
    assert ann.trinucleotide == "G[T>A]G"
    assert ann.consequence == "missense"

    ann = plus_gene.annotate(8, "G", "A")
    assert ann.trinucleotide == "G[G>A]A"
    assert ann.consequence == "nonsense"


def test_minus_strand_matches_plus_strand(minus_gene):
    assert minus_gene.seq_cds == "ATGTGGAAATAA"
    # coding position 4 of the plus gene is at 17 - 6 on the minus strand
    ann = minus_gene.annotate(11, "A", "T")
    assert ann.trinucleotide == "G[T>A]G"
    assert ann.consequence == "missense"


def test_reference_mismatch_and_gap(plus_gene):
    with pytest.raises(InputError):
        plus_gene.annotate(6, "C", "A")
    with pytest.raises(AnnotationGap):
        plus_gene.annotate(1, "T", "A")


def test_opportunities_single_exon(plus_gene):
    L = plus_gene.opportunities
    assert L.shape == (192, 4)
    assert L.sum() == 3 * 12
    # no splice sites, and TAA cannot become a nonsense change
    assert L[:, 3].sum() == 0
    assert not L.flags.writeable


def test_splice_positions_plus_strand():
    genome = "A" * 200
    gene = ReferenceGene.from_genome(
        "G", "1", 1, [(10, 21), (60, 71)], genome)
    assert gene.splice_positions == (22, 23, 26, 58, 59)
    assert len(gene.seq_splice) == 5


def test_splice_positions_minus_strand():
    genome = "A" * 200
    gene = ReferenceGene.from_genome(
        "G", "1", -1, [(10, 21), (60, 71)], genome)
    assert gene.splice_positions == (59, 58, 55, 23, 22)


def test_splice_sites_are_essential_splice():
    genome = "C" * 9 + "ATGAAA" + "GTAAGTCCCCCCAG" + "TGGTAA" + "C" * 9
    gene = ReferenceGene.from_genome(
        "G", "1", 1, [(10, 15), (30, 35)], genome)
    ann = gene.annotate(16, "G", "A")
    assert ann.consequence == "essential_splice"
    assert ann.trinucleotide == "A[G>A]T"
    assert gene.opportunities[:, 3].sum() == 3 * 5


def test_service_first_gene_wins_and_indels(plus_gene):
    other = ReferenceGene.from_genome("G2", "1", 1, [(3, 14)], GENOME)
    service = ReferenceAnnotation([plus_gene, other])

    assert service.annotate_position("chr1", 6, "T", "A").gene_id == "G1"
    indel = service.annotate_position("1", 5, "GTG", "-")
    assert indel.consequence == "indel"
    assert indel.trinucleotide is None

    with pytest.raises(AnnotationGap):
        service.annotate_position("2", 6, "T", "A")
    with pytest.raises(AnnotationGap):
        service.annotate_position("1", 16, "T", "-")


def test_restrict(reference):
    restricted = reference.restrict(["GENE003", "GENE001"])
    assert restricted.gene_ids == ["GENE001", "GENE003"]
    with pytest.raises(ConfigurationError):
        reference.restrict(["GENE001", "NOT_A_GENE"])


def test_synthetic_reference_is_consistent(synthetic):
    reference, _, layouts = synthetic
    for gene_id, strand, _, cds in layouts[:4]:
        gene = reference[gene_id]
        assert gene.strand == strand
        assert gene.seq_cds == cds
        assert len(gene.splice_positions) == 10


def test_save_and_load(tmp_path, small_reference):
    path = tmp_path / "reference.json"
    save_reference(small_reference, path)
    loaded = load_reference(path)
    assert loaded.gene_ids == small_reference.gene_ids
    gene_id = small_reference.gene_ids[1]
    np.testing.assert_array_equal(loaded.opportunity_matrix(gene_id),
                                  small_reference.opportunity_matrix(gene_id))


def test_build_reference_from_fasta(tmp_path):
    fasta = tmp_path / "genome.fa"
    fasta.write_text(">chr1 test\n" + GENOME + "\n")
    cds = pd.DataFrame({"gene_id": ["G1"], "chromosome": ["chr1"],
                        "strand": ["+"], "cds_start": [3], "cds_end": [14]})
    reference = build_reference(cds, fasta)
    assert reference.gene_ids == ["G1"]
    assert reference["G1"].seq_cds == "ATGTGGAAATAA"
    assert reference.coding_length("G1") == 12
