"""Example using seldnds with gene-level covariates.

Covariates such as expression or replication timing explain part of
the variation of the background mutation rate across genes. They enter
the negative binomial regression that gives the per-gene prior of the
dNdScv tests.
"""

from pathlib import Path

import numpy as np
import pandas as pd

from seldnds import DndsConfig, read_mutations, run_dnds
from seldnds.reference import load_reference


def load_and_prepare_covariates(path):
    """Load a covariate table and log-transform the expression columns.

    Parameters
    ----------
    path : str | Path
        Tab separated table with gene ids in the first column.

    Returns
    -------
    pd.DataFrame
        Covariate matrix indexed by gene id.
    """
    cov_matrix = pd.read_csv(path, sep="\t", index_col=0)

    print(f"Loaded covariates for {len(cov_matrix)} genes")
    print(f"Covariate columns: {list(cov_matrix.columns)}")

    expression = [c for c in cov_matrix.columns if c.startswith("expr")]
    cov_matrix[expression] = np.log1p(cov_matrix[expression])

    return cov_matrix


def main():
    data = Path("/path/to/your/data")

    reference = load_reference("./reference.json")
    mutations = read_mutations(data / "mutations.tsv")
    covariates = load_and_prepare_covariates(data / "covariates.tsv")

    # Many correlated covariates can be summarised by their leading
    # principal components
    config = DndsConfig(covariate_pcs=5)

    result = run_dnds(mutations, reference, covariates=covariates,
                      config=config)

    print(f"\nOverdispersion theta: {result.regression.theta:.3g}")
    print("Regression coefficients:")
    print(result.regression.coefficients)

    # Compare with the covariate-free background
    local = run_dnds(mutations, reference,
                     config=DndsConfig(rate_estimator="local"))

    merged = result.selection[["wmis_cv", "qglobal_cv"]].join(
        local.selection[["wmis_loc", "qglobal_loc"]])
    print("\nTop genes, regression vs local background:")
    print(merged.head(20))

    result.save("./dnds_results_with_covs")


if __name__ == "__main__":
    main()
