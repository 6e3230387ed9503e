"""Reference annotation of coding sequences.

This module provides the annotation service used by the mutation
annotator: for every gene it stores the coding sequence (in coding
orientation) with the flanking base of each coding position, and the
essential splice sites. From these it answers three questions:

- which gene, trinucleotide substitution and consequence a genomic
  substitution corresponds to (:meth:`AnnotationService.annotate_position`),
- how many point substitutions of each of the 192 types can produce
  each consequence in a gene (:meth:`AnnotationService.opportunity_matrix`),
- how long the coding sequence of a gene is.

References are built from CDS coordinates and a genome FASTA with
:func:`build_reference` and stored as JSON.
"""

import bisect
import json
import logging

from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import cached_property
from pathlib import Path

import numpy as np
import pandas as pd

from Bio import SeqIO
from Bio.Data.CodonTable import standard_dna_table

from . import constants
from .constants import (complement, normalize_chromosome,
                        substitution_label, trinucleotide_substitution_index)
from .exceptions import AnnotationGap, ConfigurationError, InputError


logger = logging.getLogger(__name__)


_codon_table = dict(standard_dna_table.forward_table)
_codon_table.update({codon: "*" for codon in standard_dna_table.stop_codons})

_impact_column = {c: i for i, c in enumerate(constants.impact_classes)}


def translate_codon(codon):
    """Translate a coding strand codon ('*' for stops, None if unknown)."""
    return _codon_table.get(codon)


def codon_change_consequence(codon, offset, alt):
    """Consequence of changing base `offset` of `codon` to `alt`.

    Stop to stop changes are synonymous and stop losses count as
    missense.

    Examples
    --------
    >>> codon_change_consequence("TGG", 2, "A")
    'nonsense'
    >>> codon_change_consequence("TAA", 1, "G")
    'synonymous'
    """
    aa_ref = translate_codon(codon)
    aa_mut = translate_codon(codon[:offset] + alt + codon[offset + 1:])
    if aa_ref is None or aa_mut is None:
        return None
    if aa_ref == aa_mut:
        return "synonymous"
    if aa_mut == "*":
        return "nonsense"
    return "missense"


@dataclass(frozen=True)
class PositionAnnotation:
    """Annotation of one mutation.

    `trinucleotide` is the strand oriented substitution label, or None
    for indels.
    """

    gene_id: str
    trinucleotide: str | None
    consequence: str


@dataclass(frozen=True)
class ReferenceGene:
    """Coding sequence and essential splice sites of one gene.

    Attributes
    ----------
    gene_id : str
    chromosome : str
    strand : int
        1 or -1.
    cds_intervals : tuple of (int, int)
        CDS segments in ascending genomic order, 1-based inclusive.
    seq_cds : str
        Coding sequence in coding orientation.
    seq_cds1up, seq_cds1down : str
        Base preceding and following each coding position, in coding
        orientation.
    splice_positions : tuple of int
        Genomic positions of the essential splice sites, in transcript
        order.
    seq_splice, seq_splice1up, seq_splice1down : str
        Same as the coding sequences, for the splice sites.
    """

    gene_id: str
    chromosome: str
    strand: int
    cds_intervals: tuple
    seq_cds: str
    seq_cds1up: str
    seq_cds1down: str
    splice_positions: tuple = ()
    seq_splice: str = ""
    seq_splice1up: str = ""
    seq_splice1down: str = ""

    def __post_init__(self):
        if self.strand not in (1, -1):
            raise InputError(
                f"Strand of {self.gene_id} must be 1 or -1, got "
                f"{self.strand!r}")
        n = len(self.seq_cds)
        if not (len(self.seq_cds1up) == len(self.seq_cds1down) == n):
            raise InputError(
                f"Flanking sequences of {self.gene_id} do not match its "
                "coding sequence length")
        if n != sum(e - s + 1 for s, e in self.cds_intervals):
            raise InputError(
                f"Coding sequence of {self.gene_id} does not match its CDS "
                "intervals")
        m = len(self.splice_positions)
        if not (len(self.seq_splice) == len(self.seq_splice1up) ==
                len(self.seq_splice1down) == m):
            raise InputError(
                f"Splice sequences of {self.gene_id} do not match its "
                "splice positions")

    @classmethod
    def from_genome(cls, gene_id, chromosome, strand, cds_intervals,
                    genome_seq):
        """Build a gene from its CDS coordinates and chromosome sequence.

        Parameters
        ----------
        gene_id : str
        chromosome : str
        strand : int
            1 or -1.
        cds_intervals : iterable of (int, int)
            1-based inclusive CDS segments, in any order.
        genome_seq : str
            Sequence of the whole chromosome (position p is
            ``genome_seq[p - 1]``).
        """
        intervals = tuple(sorted((int(s), int(e)) for s, e in cds_intervals))
        genome_seq = str(genome_seq).upper()
        strand = int(strand)

        def base(p):
            if 1 <= p <= len(genome_seq):
                return genome_seq[p - 1]
            return "N"

        positions = [p for s, e in intervals for p in range(s, e + 1)]
        coding = set(positions)

        splice = []
        for (_, end), (next_start, _) in zip(intervals, intervals[1:]):
            if strand == 1:
                splice.extend([end + 1, end + 2, end + 5,
                               next_start - 2, next_start - 1])
            else:
                splice.append(
                    [next_start - 1, next_start - 2, next_start - 5,
                     end + 2, end + 1])
        if strand == -1:
            # introns are visited from the 3' end of the genome
            splice = [p for intron in reversed(splice) for p in intron]
            positions = positions[::-1]

        seen = set()
        splice_positions = []
        for p in splice:
            if p in coding or p in seen or not 1 <= p <= len(genome_seq):
                continue
            seen.add(p)
            splice_positions.append(p)

        def oriented(ps):
            if strand == 1:
                return ("".join(base(p) for p in ps),
                        "".join(base(p - 1) for p in ps),
                        "".join(base(p + 1) for p in ps))
            return (complement("".join(base(p) for p in ps)),
                    complement("".join(base(p + 1) for p in ps)),
                    complement("".join(base(p - 1) for p in ps)))

        seq_cds, seq_cds1up, seq_cds1down = oriented(positions)
        seq_splice, seq_splice1up, seq_splice1down = oriented(
            splice_positions)

        return cls(gene_id=str(gene_id),
                   chromosome=normalize_chromosome(chromosome),
                   strand=strand,
                   cds_intervals=intervals,
                   seq_cds=seq_cds,
                   seq_cds1up=seq_cds1up,
                   seq_cds1down=seq_cds1down,
                   splice_positions=tuple(splice_positions),
                   seq_splice=seq_splice,
                   seq_splice1up=seq_splice1up,
                   seq_splice1down=seq_splice1down)

    @property
    def coding_length(self):
        return len(self.seq_cds)

    @property
    def span(self):
        """Genomic span covered by the CDS and the splice sites."""
        points = [self.cds_intervals[0][0], self.cds_intervals[-1][1]]
        points.extend(self.splice_positions)
        return min(points), max(points)

    @cached_property
    def _coding_index(self):
        positions = [p for s, e in self.cds_intervals
                     for p in range(s, e + 1)]
        if self.strand == -1:
            positions = positions[::-1]
        return {p: i for i, p in enumerate(positions)}

    @cached_property
    def _splice_index(self):
        return {p: i for i, p in enumerate(self.splice_positions)}

    def overlaps_cds(self, start, end):
        """Whether any position in [start, end] is coding."""
        for s, e in self.cds_intervals:
            if start <= e and s <= end:
                return True
        return False

    def covers(self, position):
        """Whether a substitution at `position` can be annotated."""
        return position in self._coding_index or position in self._splice_index

    def _coding_consequence(self, i, alt):
        codon_start = i - i % 3
        codon = self.seq_cds[codon_start:codon_start + 3]
        if len(codon) < 3:
            return None
        return codon_change_consequence(codon, i - codon_start, alt)

    def iter_substitutions(self):
        """Yield every possible point substitution of the gene.

        Yields
        ------
        tuple
            ``(position, ref, alt, type_index, consequence)`` with
            alleles in coding orientation and `type_index` the index of
            the trinucleotide substitution in
            :data:`constants.trinucleotide_substitutions`. Positions with
            an ambiguous base or context are skipped.
        """
        n_full = len(self.seq_cds) - len(self.seq_cds) % 3
        coding_positions = sorted(self._coding_index,
                                  key=self._coding_index.get)
        for i in range(n_full):
            ref = self.seq_cds[i]
            for alt in constants.nucleotides:
                if alt == ref:
                    continue
                label = substitution_label(
                    self.seq_cds1up[i], ref, alt, self.seq_cds1down[i])
                index = trinucleotide_substitution_index.get(label)
                consequence = self._coding_consequence(i, alt)
                if index is None or consequence is None:
                    continue
                yield coding_positions[i], ref, alt, index, consequence

        for j, position in enumerate(self.splice_positions):
            ref = self.seq_splice[j]
            for alt in constants.nucleotides:
                if alt == ref:
                    continue
                label = substitution_label(
                    self.seq_splice1up[j], ref, alt, self.seq_splice1down[j])
                index = trinucleotide_substitution_index.get(label)
                if index is None:
                    continue
                yield position, ref, alt, index, "essential_splice"

    @cached_property
    def opportunities(self):
        """Read-only 192 x 4 opportunity matrix of the gene."""
        L = np.zeros((constants.n_substitution_types,
                      constants.n_impact_classes))
        for _, _, _, index, consequence in self.iter_substitutions():
            L[index, _impact_column[consequence]] += 1
        L.setflags(write=False)
        return L

    def annotate(self, position, ref, mut):
        """Annotate a single base substitution on the forward strand.

        Raises
        ------
        AnnotationGap
            If `position` is neither coding nor an essential splice site.
        InputError
            If `ref` does not match the reference base.
        """
        at_splice_site = False
        if position in self._coding_index:
            i = self._coding_index[position]
            seq, up, down = self.seq_cds, self.seq_cds1up, self.seq_cds1down
        elif position in self._splice_index:
            at_splice_site = True
            i = self._splice_index[position]
            seq, up, down = (self.seq_splice, self.seq_splice1up,
                             self.seq_splice1down)
        else:
            raise AnnotationGap(
                f"{self.chromosome}:{position} is not an annotated site of "
                f"{self.gene_id}")

        ref_coding = ref if self.strand == 1 else complement(ref)
        alt_coding = mut if self.strand == 1 else complement(mut)
        if seq[i] != ref_coding:
            raise InputError(
                f"Reference base mismatch at {self.chromosome}:{position} "
                f"({self.gene_id}): expected "
                f"{seq[i] if self.strand == 1 else complement(seq[i])}, "
                f"got {ref}")

        label = substitution_label(up[i], ref_coding, alt_coding, down[i])
        if at_splice_site:
            consequence = "essential_splice"
        else:
            consequence = self._coding_consequence(i, alt_coding)
            if consequence is None:
                raise AnnotationGap(
                    f"{self.chromosome}:{position} lies in an incomplete "
                    f"or ambiguous codon of {self.gene_id}")
        return PositionAnnotation(self.gene_id, label, consequence)

    def to_dict(self):
        return {
            "gene_id": self.gene_id,
            "chromosome": self.chromosome,
            "strand": self.strand,
            "cds_intervals": [list(iv) for iv in self.cds_intervals],
            "seq_cds": self.seq_cds,
            "seq_cds1up": self.seq_cds1up,
            "seq_cds1down": self.seq_cds1down,
            "splice_positions": list(self.splice_positions),
            "seq_splice": self.seq_splice,
            "seq_splice1up": self.seq_splice1up,
            "seq_splice1down": self.seq_splice1down,
        }

    @classmethod
    def from_dict(cls, d):
        d = dict(d)
        d["cds_intervals"] = tuple(tuple(iv) for iv in d["cds_intervals"])
        d["splice_positions"] = tuple(d.get("splice_positions", ()))
        return cls(**d)


class AnnotationService(ABC):
    """Interface the mutation annotator relies on."""

    @property
    @abstractmethod
    def gene_ids(self):
        """Genes in scope, in reference order."""

    @abstractmethod
    def annotate_position(self, chromosome, position, ref, mut):
        """Return a :class:`PositionAnnotation`.

        Raises :class:`AnnotationGap` when the mutation hits no gene and
        :class:`InputError` on a reference base mismatch.
        """

    @abstractmethod
    def opportunity_matrix(self, gene_id):
        """192 x 4 matrix of substitution opportunities of a gene."""

    @abstractmethod
    def coding_length(self, gene_id):
        """Number of coding bases of a gene."""

    @abstractmethod
    def restrict(self, gene_ids):
        """Return a service limited to `gene_ids`."""


class ReferenceAnnotation(AnnotationService):
    """In-memory annotation service built from :class:`ReferenceGene`.

    When genes overlap, the one listed first wins.
    """

    def __init__(self, genes):
        self._genes = {}
        for gene in genes:
            if gene.gene_id in self._genes:
                raise InputError(f"Duplicated gene {gene.gene_id}")
            self._genes[gene.gene_id] = gene
        self._order = {g: i for i, g in enumerate(self._genes)}

        by_chrom = {}
        for gene in self._genes.values():
            start, end = gene.span
            by_chrom.setdefault(gene.chromosome, []).append(
                (start, end, gene.gene_id))
        self._intervals = {}
        self._starts = {}
        self._max_span = {}
        for chrom, ivs in by_chrom.items():
            ivs.sort()
            self._intervals[chrom] = ivs
            self._starts[chrom] = [iv[0] for iv in ivs]
            self._max_span[chrom] = max(e - s for s, e, _ in ivs)

    def __len__(self):
        return len(self._genes)

    def __contains__(self, gene_id):
        return gene_id in self._genes

    def __getitem__(self, gene_id):
        return self._genes[gene_id]

    @property
    def gene_ids(self):
        return list(self._genes)

    @property
    def genes(self):
        return list(self._genes.values())

    def _overlapping(self, chromosome, start, end):
        """Genes whose span overlaps [start, end], in reference order."""
        starts = self._starts.get(chromosome)
        if not starts:
            return []
        lo = bisect.bisect_left(starts, start - self._max_span[chromosome])
        hi = bisect.bisect_right(starts, end)
        hits = [g for s, e, g in self._intervals[chromosome][lo:hi]
                if s <= end and start <= e]
        return sorted(hits, key=self._order.get)

    def annotate_position(self, chromosome, position, ref, mut):
        chromosome = normalize_chromosome(chromosome)
        position = int(position)
        is_indel = (len(ref) != 1 or len(mut) != 1 or
                    "-" in ref or "-" in mut)

        if is_indel:
            end = position + max(len(ref.replace("-", "")), 1) - 1
            for gene_id in self._overlapping(chromosome, position, end):
                if self._genes[gene_id].overlaps_cds(position, end):
                    return PositionAnnotation(gene_id, None, "indel")
            raise AnnotationGap(
                f"Indel at {chromosome}:{position} does not overlap any CDS")

        for gene_id in self._overlapping(chromosome, position, position):
            gene = self._genes[gene_id]
            if gene.covers(position):
                return gene.annotate(position, ref, mut)
        raise AnnotationGap(
            f"{chromosome}:{position} is outside every annotated gene")

    def opportunity_matrix(self, gene_id):
        return self._genes[gene_id].opportunities

    def coding_length(self, gene_id):
        return self._genes[gene_id].coding_length

    def restrict(self, gene_ids):
        gene_ids = list(dict.fromkeys(gene_ids))
        unknown = [g for g in gene_ids if g not in self._genes]
        if unknown:
            raise ConfigurationError(
                f"{len(unknown)} genes of the gene list are not in the "
                f"reference: {unknown[:10]}")
        keep = set(gene_ids)
        # reference order is kept so that overlap resolution is unchanged
        return ReferenceAnnotation(
            g for g in self._genes.values() if g.gene_id in keep)


def build_reference(cds_table, genome_fasta):
    """Build a :class:`ReferenceAnnotation` from CDS coordinates.

    Parameters
    ----------
    cds_table : pandas.DataFrame | str | Path
        One row per CDS segment with columns 'gene_id', 'chromosome',
        'strand', 'cds_start' and 'cds_end' (1-based, inclusive), or the
        path of a tab separated file with those columns.
    genome_fasta : str | Path
        Genome FASTA file with one record per chromosome.

    Returns
    -------
    ReferenceAnnotation
    """
    if not isinstance(cds_table, pd.DataFrame):
        cds_table = pd.read_csv(cds_table, sep="\t")

    required = ["gene_id", "chromosome", "strand", "cds_start", "cds_end"]
    missing = [c for c in required if c not in cds_table.columns]
    if missing:
        raise InputError(f"CDS table lacks columns {missing}")

    cds_table = cds_table.assign(
        chromosome=cds_table["chromosome"].map(normalize_chromosome))
    wanted = set(cds_table["chromosome"])

    logger.info(f"Reading genome sequence from {genome_fasta}...")
    genome = {}
    for rec in SeqIO.parse(str(genome_fasta), "fasta"):
        chrom = normalize_chromosome(rec.id)
        if chrom in wanted:
            genome[chrom] = str(rec.seq).upper()
    logger.info("... done.")

    genes = []
    for gene_id, rows in cds_table.groupby("gene_id", sort=False):
        chrom = rows["chromosome"].iloc[0]
        if chrom not in genome:
            logger.warning(
                f"Chromosome {chrom} of {gene_id} is not in the genome "
                "FASTA; gene skipped")
            continue
        strand = rows["strand"].iloc[0]
        strand = -1 if strand in ("-", -1, "-1") else 1
        genes.append(ReferenceGene.from_genome(
            gene_id, chrom, strand,
            zip(rows["cds_start"], rows["cds_end"]),
            genome[chrom]))

    logger.info(f"Built reference with {len(genes)} genes")
    return ReferenceAnnotation(genes)


def save_reference(reference, path):
    """Write a reference to a JSON file."""
    path = Path(path)
    with open(path, "w") as fh:
        json.dump([g.to_dict() for g in reference.genes], fh)
    logger.info(f"Reference with {len(reference)} genes saved to {path}")


def load_reference(path):
    """Read a reference written by :func:`save_reference`."""
    path = Path(path)
    logger.info(f"Loading reference from {path}...")
    with open(path) as fh:
        records = json.load(fh)
    reference = ReferenceAnnotation(
        ReferenceGene.from_dict(r) for r in records)
    logger.info(f"... loaded {len(reference)} genes.")
    return reference
