"""Synthetic references and mutation catalogues shared by the tests."""

import itertools

import numpy as np
import pytest

from seldnds.constants import complement, reverse_complement
from seldnds.mutations import Mutation
from seldnds.reference import ReferenceAnnotation, ReferenceGene


_stops = {"TAA", "TAG", "TGA"}
_sense_codons = ["".join(c) for c in itertools.product("ACGT", repeat=3)
                 if "".join(c) not in _stops]


def random_dna(rng, n):
    return "".join(rng.choice(list("ACGT"), size=n))


def make_reference(n_genes=60, n_codons=300, n_exons=3, intron_length=80,
                   spacer=200, seed=1):
    """Genes laid out on chromosome 1, alternating strands.

    Each coding sequence is ATG, random sense codons and a stop codon,
    split into `n_exons` exons.
    """
    rng = np.random.default_rng(seed)
    genome = []
    offset = 0
    layouts = []

    for g in range(n_genes):
        codons = rng.choice(_sense_codons, size=n_codons - 2)
        cds = "ATG" + "".join(codons) + "TAA"
        cuts = np.linspace(0, len(cds), n_exons + 1).astype(int)
        exons = [cds[a:b] for a, b in zip(cuts[:-1], cuts[1:])]

        # transcript oriented layout: exon, intron, exon, ...
        transcript = ""
        exon_ranges = []
        for i, exon in enumerate(exons):
            if i:
                transcript += "GT" + random_dna(rng, intron_length - 4) + "AG"
            exon_ranges.append((len(transcript), len(transcript) + len(exon)))
            transcript += exon

        strand = 1 if g % 2 == 0 else -1
        start = offset + spacer + 1
        if strand == 1:
            segment = transcript
            intervals = [(start + a, start + b - 1) for a, b in exon_ranges]
        else:
            segment = reverse_complement(transcript)
            n = len(transcript)
            intervals = [(start + n - b, start + n - a - 1)
                         for a, b in exon_ranges]

        genome.append(random_dna(rng, spacer))
        genome.append(segment)
        offset += spacer + len(segment)
        layouts.append((f"GENE{g:03d}", strand, intervals, cds))

    genome.append(random_dna(rng, spacer))
    genome_seq = "".join(genome)

    genes = [ReferenceGene.from_genome(gene_id, "1", strand, intervals,
                                       genome_seq)
             for gene_id, strand, intervals, _ in layouts]
    return ReferenceAnnotation(genes), genome_seq, layouts


def genomic_alleles(gene, ref, alt):
    """Coding strand alleles to forward strand alleles."""
    if gene.strand == 1:
        return ref, alt
    return complement(ref), complement(alt)


def simulate_mutations(reference, *, rate=0.05, enrichment=None,
                       n_samples=50, indels_per_gene=2.0,
                       multiplier_shape=4.0, seed=7):
    """Deterministic neutral catalogue with optional enrichments.

    Every gene gets a background multiplier drawn from a Gamma with
    mean 1. For each impact class, ``round(rate * m * w * n_sites)``
    distinct sites are mutated, where `w` is 1 unless `enrichment`
    maps ``(gene_id, consequence)`` to another factor. Genes with an
    enrichment keep a multiplier of 1.
    """
    enrichment = enrichment or {}
    enriched_genes = {g for g, _ in enrichment}
    rng = np.random.default_rng(seed)
    mutations = []

    for gene in reference.genes:
        m = rng.gamma(multiplier_shape, 1.0 / multiplier_shape)
        if gene.gene_id in enriched_genes:
            m = 1.0

        sites = {}
        for position, ref, alt, _, consequence in gene.iter_substitutions():
            sites.setdefault(consequence, []).append((position, ref, alt))

        for consequence in sorted(sites):
            options = sites[consequence]
            w = enrichment.get((gene.gene_id, consequence), 1.0)
            k = min(len(options), int(round(rate * m * w * len(options))))
            chosen = rng.choice(len(options), size=k, replace=False)
            for j in sorted(chosen):
                position, ref, alt = options[j]
                g_ref, g_alt = genomic_alleles(gene, ref, alt)
                sample = f"S{rng.integers(n_samples):03d}"
                mutations.append(
                    Mutation(sample, gene.chromosome, position, g_ref, g_alt))

        n_ind = rng.poisson(indels_per_gene * m)
        start, end = gene.cds_intervals[0]
        for position in rng.choice(np.arange(start, end + 1), size=n_ind,
                                   replace=False):
            sample = f"S{rng.integers(n_samples):03d}"
            mutations.append(
                Mutation(sample, gene.chromosome, int(position), "A", "-"))

    return mutations


@pytest.fixture(scope="session")
def synthetic():
    """Reference, chromosome sequence and gene layouts."""
    return make_reference()


@pytest.fixture(scope="session")
def reference(synthetic):
    return synthetic[0]


@pytest.fixture(scope="session")
def small_reference():
    return make_reference(n_genes=6, n_codons=60, seed=3)[0]


@pytest.fixture(scope="session")
def simulate():
    return simulate_mutations
