"""Utility functions for seldnds.

General helpers used across the package: principal components of
gene-level covariates and multiple testing correction.
"""

import numpy as np
import pandas as pd
from sklearn.decomposition import PCA
from statsmodels.stats.multitest import multipletests


def run_pca_on_covariates(
    cov_df: pd.DataFrame,
    columns: list[str] | None = None,
    n_components: int | None = None,
    *,
    standardize: bool = True,
    dropna: str = "any",
    **pca_kwargs,
) -> pd.DataFrame:
    """Replace gene-level covariates by their principal components.

    Correlated covariates (e.g. expression in several tissues) make the
    background rate regression unstable; a few leading components
    usually carry the same information.

    Parameters
    ----------
    cov_df : pandas.DataFrame
        Gene-indexed covariates.
    columns : list[str] | None
        Columns to use. If None, every numeric column.
    n_components : int | None, default None
        Number of components kept. If None, as many as PCA allows.
    standardize : bool, default True
        If True, z-score each covariate first.
    dropna : {'any','all','none'}, default 'any'
        'any' and 'all' drop genes with any / all values missing,
        'none' fills missing values with column means so that every
        gene keeps a score.
    **pca_kwargs
        Forwarded to sklearn.decomposition.PCA.

    Returns
    -------
    scores : pandas.DataFrame
        Gene-indexed scores with columns 'PC1', 'PC2', ... The
        explained variance ratios and the loadings are stored in
        ``scores.attrs`` under 'explained_variance_ratio' and
        'components'.

    Examples
    --------
    >>> cov_df = pd.DataFrame({
    ...     'expression': [1, 2, 3, 4, 5],
    ...     'replication_time': [5, 4, 3, 2, 1]
    ... }, index=['TP53', 'KRAS', 'PTEN', 'APC', 'EGFR'])
    >>> run_pca_on_covariates(cov_df, n_components=1).columns.tolist()
    ['PC1']

    """
    if columns is None:
        cols = [c for c in cov_df.columns
                if pd.api.types.is_numeric_dtype(cov_df[c])]
    else:
        cols = columns

    X = cov_df[cols].astype(float)

    if dropna == "any":
        X = X.dropna(how="any")
    elif dropna == "all":
        X = X.dropna(how="all")
    elif dropna == "none":
        X = X.fillna(X.mean())
    else:
        raise ValueError(
            f"dropna must be 'any', 'all', or 'none', got {dropna!r}"
        )

    if standardize:
        X = (X - X.mean()) / X.std()

    pca = PCA(n_components=n_components, **pca_kwargs)
    scores = pca.fit_transform(X)

    pc_names = [f"PC{i+1}" for i in range(scores.shape[1])]
    result = pd.DataFrame(scores, index=X.index, columns=pc_names)

    result.attrs["explained_variance_ratio"] = (
        pca.explained_variance_ratio_
    )
    result.attrs["components"] = pca.components_

    return result


def benjamini_hochberg(pvalues):
    """Benjamini-Hochberg q-values, leaving missing p-values missing.

    Parameters
    ----------
    pvalues : array-like or pandas.Series

    Returns
    -------
    numpy.ndarray | pandas.Series
        Same type and shape as the input.

    Examples
    --------
    >>> benjamini_hochberg([0.01, 0.04, np.nan]).round(2).tolist()
    [0.02, 0.04, nan]
    """
    values = np.asarray(pvalues, dtype=float)
    qvalues = np.full(values.shape, np.nan)
    ok = ~np.isnan(values)
    if ok.any():
        qvalues[ok] = multipletests(values[ok], method="fdr_bh")[1]

    if isinstance(pvalues, pd.Series):
        return pd.Series(qvalues, index=pvalues.index, name=pvalues.name)
    return qvalues
