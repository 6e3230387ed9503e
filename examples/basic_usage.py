"""Basic usage example for seldnds.

This script builds a reference from CDS coordinates and a genome
FASTA, runs the dN/dS analysis on a table of somatic mutations and
prints the genes under significant positive selection.
"""

from pathlib import Path

from seldnds import DndsConfig, read_mutations, run_dnds
from seldnds.reference import build_reference, load_reference, save_reference


def get_reference(cds_table, genome_fasta, cache):
    """Build the reference once and reuse the saved JSON afterwards.

    Parameters
    ----------
    cds_table : str | Path
        Tab separated CDS segments with columns gene_id, chromosome,
        strand, cds_start and cds_end (1-based, inclusive).
    genome_fasta : str | Path
        Genome FASTA whose record names match the chromosomes.
    cache : Path
        Where the reference JSON is written.

    Returns
    -------
    ReferenceAnnotation
    """
    if cache.exists():
        print(f"Loading reference from {cache}")
        return load_reference(cache)

    print("Building reference (this scans the whole genome)...")
    reference = build_reference(cds_table, genome_fasta)
    save_reference(reference, cache)
    return reference


def main():
    data = Path("/path/to/your/data")

    reference = get_reference(data / "cds.tsv", data / "genome.fa",
                              Path("./reference.json"))

    # Columns sampleID, chr, pos, ref, mut (MAF names also work)
    mutations = read_mutations(data / "mutations.tsv")
    print(f"Loaded {len(mutations)} mutations")

    config = DndsConfig(
        substitution_model="192r_3w",
        max_muts_per_gene_per_sample=3,
        max_coding_muts_per_sample=3000,
    )

    result = run_dnds(mutations, reference, config=config)

    print("\nGlobal dN/dS:")
    print(result.global_dnds)

    print("\nSubstitution models:")
    print(result.model_comparison)

    significant = result.selection[result.selection["qglobal_cv"] < 0.1]
    print(f"\n{len(significant)} genes with qglobal_cv < 0.1:")
    print(significant[["n_syn", "n_mis", "n_non", "n_spl", "n_ind",
                       "wmis_cv", "wnon_cv", "qglobal_cv"]])

    for message in result.quality_warnings:
        print(f"Warning: {message}")

    result.save("./dnds_results")


if __name__ == "__main__":
    main()


# Alternative: command line
# =========================
#
#   python -m seldnds build-reference cds.tsv genome.fa reference.json
#   python -m seldnds run mutations.tsv reference.json --outdir results
