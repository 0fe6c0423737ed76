"""Conversion between flat draw tables and per-parameter arrays.

Flat tables name each scalar column `name[i,j,...]` with 1-based indices,
the way Stan labels its output. `clean_draws` turns such a table into one
array per parameter with the draw on axis 0; `flatten_draws` goes back.
"""

import re

import numpy as np
import pandas as pd

LABEL_RE = re.compile(r"^([^\[\],]+)(?:\[([^\]]*)\])?$")


def parse_label(label):
    """Split `name[i,j]` into ("name", (i, j)); a bare name gives ()."""
    match = LABEL_RE.match(str(label))
    if match is None:
        raise ValueError(f"Malformed parameter label: {label!r}")
    name, dims = match.groups()
    if dims is None:
        return name, ()
    try:
        return name, tuple(int(d) for d in dims.split(","))
    except ValueError:
        raise ValueError(f"Non-integer index in parameter label: {label!r}") from None


def clean_draws(draws, pars=None):
    """Reshape a flat table of draws into a dict of arrays.

    Parameters
    ----------
    draws : pd.DataFrame or mapping
        One row per draw, one column per scalar parameter.
    pars : str, list of str or None
        Base names to keep. All parameters are kept when None.

    Returns
    -------
    dict
        Base name -> array of shape (n_draws, *index extents). Axes after
        the first follow the order of the bracketed indices. Values keep
        the table's dtype unless some index cells have no column, in which
        case they are promoted to float and filled with NaN.
    """
    df = pd.DataFrame(draws)

    if pars is not None:
        if isinstance(pars, str):
            pars = [pars]
        keep = set(pars)
        df = df[[col for col in df.columns if str(col).split("[", 1)[0] in keep]]

    # Group column labels by base name, in order of first appearance
    groups = {}
    for col in df.columns:
        name, idx = parse_label(col)
        groups.setdefault(name, []).append((col, idx))

    n_draws = len(df)
    out = {}
    for name, members in groups.items():
        arity = len(members[0][1])
        for col, idx in members:
            if len(idx) != arity:
                raise ValueError(
                    f"Parameter {name!r} mixes index arity {arity} and "
                    f"{len(idx)} (column {col!r})"
                )

        values = df[[col for col, _ in members]].to_numpy()
        if arity == 0:
            # Duplicate bare names collapse onto the last column
            out[name] = values[:, -1].copy()
            continue

        index = np.array([idx for _, idx in members]) - 1
        if (index < 0).any():
            raise ValueError(f"Parameter {name!r} has an index below 1")
        extents = tuple(index.max(axis=0) + 1)
        if len({idx for _, idx in members}) == np.prod(extents):
            arr = np.empty((n_draws, *extents), dtype=values.dtype)
        else:
            arr = np.full(
                (n_draws, *extents), np.nan, dtype=np.result_type(values.dtype, float)
            )
        arr[(slice(None), *index.T)] = values
        out[name] = arr
    return out


def flatten_draws(samples):
    """Flatten a dict of draw-first arrays into a Stan-style table.

    Entries are laid out column-major (the first index varies fastest);
    one-axis arrays become a single bare-named column.
    """
    columns = {}
    n_draws = None
    for name, values in samples.items():
        values = np.asarray(values)
        if values.ndim == 0:
            raise ValueError(f"{name!r} has no draw axis")
        if n_draws is None:
            n_draws = values.shape[0]
        elif values.shape[0] != n_draws:
            raise ValueError(
                f"{name!r} has {values.shape[0]} draws, expected {n_draws}"
            )

        if values.ndim == 1:
            columns[name] = values
            continue
        shape = values.shape[1:]
        for flat in range(int(np.prod(shape))):
            idx = np.unravel_index(flat, shape, order="F")
            label = f"{name}[{','.join(str(i + 1) for i in idx)}]"
            columns[label] = values[(slice(None), *idx)]
    return pd.DataFrame(columns)
