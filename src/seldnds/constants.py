"""Constants that we use in multiple modules."""

# Random seed used when subsampling mutations over the per gene per
# sample cap. Set to None for a non reproducible draw.
random_seed = 777


# Default exclusion thresholds. A sample with more coding mutations
# than `max_coding_muts_per_sample` is considered a hypermutator, and
# no more than `max_muts_per_gene_per_sample` mutations of a sample are
# kept in a single gene. Both can be disabled with float("inf").
max_coding_muts_per_sample = 3000
max_muts_per_gene_per_sample = 3

# Samples whose coding burden exceeds this multiple of the cohort
# median are dropped as outliers (disabled by default).
outlier_sample_threshold = float("inf")

# Below this value the negative binomial theta is reported as a
# degenerate fit.
theta_warning_threshold = 1.0


# Nucleotides
nucleotides = ["A", "C", "G", "T"]

complement_table = str.maketrans("ACGT", "TGCA")


# Strand oriented trinucleotide substitution types. Order first by
# reference base, then by mutant base, then by previous nucleotide and
# then by next nucleotide.
trinucleotide_substitutions = [f"{first}[{mid_from}>{mid_to}]{third}"
                               for mid_from in "ACGT"
                               for mid_to in "ACGT".replace(mid_from, "")
                               for first in "ACGT"
                               for third in "ACGT"]

trinucleotide_substitution_index = {
    label: i for i, label in enumerate(trinucleotide_substitutions)}

n_substitution_types = len(trinucleotide_substitutions)

# Single base changes, without context (12 of them)
base_changes = [f"{mid_from}>{mid_to}"
                for mid_from in "ACGT"
                for mid_to in "ACGT".replace(mid_from, "")]

transitions = {"A>G", "G>A", "C>T", "T>C"}


# Consequence classes of a point substitution, in the column order of
# the observed and opportunity matrices.
impact_classes = ("synonymous", "missense", "nonsense", "essential_splice")

n_impact_classes = len(impact_classes)

count_columns = ["n_syn", "n_mis", "n_non", "n_spl"]
expected_columns = ["exp_syn", "exp_mis", "exp_non", "exp_spl"]

# Names of the selection parameters of the non synonymous columns
selection_free = ("wmis", "wnon", "wspl")
selection_truncating_tied = ("wmis", "wtru", "wtru")
selection_all_tied = ("wall", "wall", "wall")


def reverse_complement(seq):
    """Return the reverse complement of a DNA sequence."""
    return seq.translate(complement_table)[::-1]


def complement(seq):
    """Return the complement of a DNA sequence (not reversed)."""
    return seq.translate(complement_table)


def substitution_label(up, ref, alt, down):
    """Build the strand oriented label of a trinucleotide substitution.

    Examples
    --------
    >>> substitution_label("A", "C", "T", "G")
    'A[C>T]G'
    """
    return f"{up}[{ref}>{alt}]{down}"


def extract_base_change(mutation_type):
    """Extract the single base change from a substitution label.

    Examples
    --------
    >>> extract_base_change('G[C>T]G')
    'C>T'
    """
    return mutation_type[2:5]


def normalize_chromosome(chromosome):
    """Drop a leading 'chr' so that 'chr1' and '1' refer to the same."""
    chromosome = str(chromosome)
    if chromosome.lower().startswith("chr"):
        return chromosome[3:]
    return chromosome
