"""Command-line interface for seldnds.

Usage:
    python -m seldnds run MUTATIONS REFERENCE [options]
    python -m seldnds build-reference CDS_TABLE GENOME_FASTA OUTPUT
    python -m seldnds models
"""

import sys
import logging
import argparse

import pandas as pd

from .config import DndsConfig
from .exceptions import ConfigurationError, ConvergenceError, InputError


logger = logging.getLogger("seldnds")


def _float_or_inf(value):
    """Parse a float, accepting 'inf' to disable a threshold."""
    try:
        return float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"expected a number or 'inf', got {value!r}") from None


def build_parser():
    defaults = DndsConfig()
    parser = argparse.ArgumentParser(
        prog="python -m seldnds",
        description="Estimate dN/dS ratios and detect genes under "
                    "selection from somatic mutations",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Build a reference from CDS coordinates and a genome FASTA
  python -m seldnds build-reference cds.tsv genome.fa reference.json

  # Run with default options
  python -m seldnds run mutations.tsv reference.json --outdir results

  # Targeted panel with covariates and no per gene cap
  python -m seldnds run panel.tsv reference.json --targeted \\
      --gene-list genes.txt --covariates covs.tsv \\
      --max-muts-per-gene-per-sample inf
        """,
    )
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Show debug messages")
    sub = parser.add_subparsers(dest="command")

    run = sub.add_parser("run", help="Run the dN/dS analysis")
    run.add_argument("mutations",
                     help="Tab separated mutation table (sampleID, chr, "
                          "pos, ref, mut)")
    run.add_argument("reference", help="Reference JSON")
    run.add_argument("--gene-list",
                     help="File with one gene per line to restrict to")
    run.add_argument("--covariates",
                     help="Tab separated gene covariates, genes in the "
                          "first column")
    run.add_argument("--outdir", "-o", default="seldnds_results",
                     help="Output directory (default: %(default)s)")
    run.add_argument("--substitution-model",
                     default=defaults.substitution_model,
                     help="192r_3w, 12r_3w or 2r_3w (default: %(default)s)")
    run.add_argument("--rate-estimator", default=defaults.rate_estimator,
                     choices=["regression", "local"])
    run.add_argument("--max-muts-per-gene-per-sample", type=_float_or_inf,
                     default=defaults.max_muts_per_gene_per_sample)
    run.add_argument("--max-coding-muts-per-sample", type=_float_or_inf,
                     default=defaults.max_coding_muts_per_sample)
    run.add_argument("--outlier-sample-threshold", type=_float_or_inf,
                     default=defaults.outlier_sample_threshold)
    run.add_argument("--targeted", action="store_true",
                     help="Targeted sequencing (requires --gene-list)")
    run.add_argument("--unconstrained-wnon-wspl", action="store_true",
                     help="Do not tie wnon and wspl in the tests")
    run.add_argument("--two-sided", action="store_true",
                     help="Also count negative selection as evidence")
    run.add_argument("--theta-warning-threshold", type=float,
                     default=defaults.theta_warning_threshold)
    run.add_argument("--maxiter", type=int, default=defaults.maxiter)
    run.add_argument("--covariate-pcs", type=int, default=None)
    run.add_argument("--seed", type=int, default=defaults.random_seed)
    run.add_argument("--n-jobs", "-j", type=int, default=defaults.n_jobs)

    ref = sub.add_parser("build-reference",
                         help="Build a reference JSON from CDS coordinates")
    ref.add_argument("cds_table",
                     help="Tab separated CDS segments (gene_id, chromosome, "
                          "strand, cds_start, cds_end)")
    ref.add_argument("genome_fasta", help="Genome FASTA")
    ref.add_argument("output", help="Output JSON")

    sub.add_parser("models", help="List the substitution models")
    return parser


def _run(args):
    from .mutations import read_mutations
    from .pipeline import run_dnds
    from .reference import load_reference

    config = DndsConfig(
        substitution_model=args.substitution_model,
        rate_estimator=args.rate_estimator,
        max_muts_per_gene_per_sample=args.max_muts_per_gene_per_sample,
        max_coding_muts_per_sample=args.max_coding_muts_per_sample,
        outlier_sample_threshold=args.outlier_sample_threshold,
        targeted=args.targeted,
        constrain_wnon_wspl=not args.unconstrained_wnon_wspl,
        positive_selection_only=not args.two_sided,
        theta_warning_threshold=args.theta_warning_threshold,
        maxiter=args.maxiter,
        covariate_pcs=args.covariate_pcs,
        random_seed=args.seed,
        n_jobs=args.n_jobs)

    gene_list = None
    if args.gene_list:
        with open(args.gene_list) as fh:
            gene_list = [line.strip() for line in fh if line.strip()]

    covariates = None
    if args.covariates:
        covariates = pd.read_csv(args.covariates, sep="\t", index_col=0)

    result = run_dnds(read_mutations(args.mutations),
                      load_reference(args.reference),
                      gene_list=gene_list,
                      covariates=covariates,
                      config=config)
    result.save(args.outdir)

    suffix = config.suffix
    n_sig = int((result.selection[f"qglobal_{suffix}"] < 0.1).sum())
    print(f"{n_sig} genes with qglobal_{suffix} < 0.1")
    print(result.global_dnds.to_string())
    return 0


def _build_reference(args):
    from .reference import build_reference, save_reference

    save_reference(build_reference(args.cds_table, args.genome_fasta),
                   args.output)
    return 0


def _models(args):
    from .substitution_models import SUBSTITUTION_MODELS

    for name, cls in SUBSTITUTION_MODELS.items():
        model = cls()
        print(f"{name:10s}{model.n_rates:5d} rates  {cls.__doc__}")
    return 0


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s")

    commands = {"run": _run,
                "build-reference": _build_reference,
                "models": _models}
    if args.command not in commands:
        parser.print_help()
        return 1

    try:
        return commands[args.command](args)
    except (ConfigurationError, ConvergenceError, InputError) as e:
        logger.error(str(e))
        return 2


if __name__ == "__main__":
    sys.exit(main())
