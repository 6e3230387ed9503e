"""Mutation records and loading of mutation tables.

A mutation is identified by sample, chromosome, position, reference and
mutant allele. Records are validated on construction; the table loader
drops malformed rows with a warning, in the same way the MAF loaders
drop invalid chromosomes and alleles.
"""

import logging

from dataclasses import dataclass
from pathlib import Path

import pandas as pd

from .constants import normalize_chromosome
from .exceptions import InputError


logger = logging.getLogger(__name__)


_valid_allele_chars = set("ACGT-")

# Accepted spellings of the five required columns
_column_aliases = {
    "sample_id": ("sample_id", "sampleID", "Tumor_Sample_Barcode"),
    "chromosome": ("chromosome", "chr", "Chromosome"),
    "position": ("position", "pos", "Start_Position"),
    "ref": ("ref", "Reference_Allele"),
    "mut": ("mut", "alt", "Tumor_Seq_Allele2"),
}


@dataclass(frozen=True)
class Mutation:
    """A single observed mutation.

    Attributes
    ----------
    sample_id : str
    chromosome : str
        Chromosome name without a leading 'chr'.
    position : int
        1-based position of the first reference base.
    ref : str
        Reference allele ('-' for insertions).
    mut : str
        Mutant allele ('-' for deletions).
    """

    sample_id: str
    chromosome: str
    position: int
    ref: str
    mut: str

    def __post_init__(self):
        ref = str(self.ref).upper()
        mut = str(self.mut).upper()
        try:
            position = int(self.position)
        except (TypeError, ValueError):
            raise InputError(
                f"Invalid position {self.position!r} in sample "
                f"{self.sample_id!r}") from None

        if position < 1:
            raise InputError(
                f"Position must be positive, got {position}")
        if not ref or not mut:
            raise InputError("Empty allele")
        if set(ref) - _valid_allele_chars or set(mut) - _valid_allele_chars:
            raise InputError(
                f"Alleles must be made of A, C, G, T or '-', "
                f"got {ref!r}>{mut!r}")
        if ref == mut:
            raise InputError(
                f"Reference and mutant alleles are identical ({ref!r})")

        object.__setattr__(self, "sample_id", str(self.sample_id))
        object.__setattr__(
            self, "chromosome", normalize_chromosome(self.chromosome))
        object.__setattr__(self, "position", position)
        object.__setattr__(self, "ref", ref)
        object.__setattr__(self, "mut", mut)

    @property
    def is_indel(self):
        """True unless both alleles are a single base."""
        return (len(self.ref) != 1 or len(self.mut) != 1 or
                "-" in self.ref or "-" in self.mut)

    @property
    def event_key(self):
        """Genomic event, independent of the sample it was found in."""
        return (self.chromosome, self.position, self.ref, self.mut)


def _resolve_columns(df):
    """Map the required fields to the columns present in `df`."""
    resolved = {}
    for field_name, aliases in _column_aliases.items():
        for alias in aliases:
            if alias in df.columns:
                resolved[field_name] = alias
                break
        else:
            raise InputError(
                f"Mutation table lacks a {field_name!r} column "
                f"(accepted names: {list(aliases)})")
    return resolved


def mutations_from_frame(df):
    """Convert a mutation table into a list of :class:`Mutation`.

    Parameters
    ----------
    df : pandas.DataFrame
        One row per mutation with columns for sample, chromosome,
        position, reference and mutant allele. Both the dNdScv names
        (``sampleID, chr, pos, ref, mut``) and the long names
        (``sample_id, chromosome, position, ref, mut``) are accepted.

    Returns
    -------
    list[Mutation]
        Valid records in input order. Malformed rows are dropped and
        logged.
    """
    cols = _resolve_columns(df)

    mutations = []
    n_invalid = 0
    for row in df[[cols[k] for k in _column_aliases]].itertuples(
            index=False, name=None):
        try:
            mutations.append(Mutation(*row))
        except InputError as e:
            n_invalid += 1
            logger.debug(f"Skipped malformed mutation {row}: {e}")

    if n_invalid:
        logger.warning(f"Removed {n_invalid} malformed mutation records")
    else:
        logger.debug("All mutation records are well formed")

    return mutations


def read_mutations(path):
    """Read a tab separated mutation table from `path`."""
    path = Path(path)
    logger.info(f"Reading mutations from {path}")
    df = pd.read_csv(path, sep="\t", dtype=str, comment="#")
    mutations = mutations_from_frame(df)
    logger.info(f"... read {len(mutations)} mutations.")
    return mutations


def mutations_to_frame(mutations):
    """Tabulate mutations, with their input index as `mutation_id`."""
    records = [
        (i, m.sample_id, m.chromosome, m.position, m.ref, m.mut)
        for i, m in enumerate(mutations)]
    return pd.DataFrame(
        records,
        columns=["mutation_id", "sample_id", "chromosome", "position",
                 "ref", "mut"])
