#!/usr/bin/env python3
"""indices.py

Band-math indices derived per frame before compositing.

- ndvi: normalized difference (nir - red) / (nir + red)
- rvi: radar vegetation index from VV/VH backscatter in dB, 4*vh / (vv + vh) in linear power

Masked inputs stay masked, and a zero denominator yields NaN rather than inf.
"""

from __future__ import annotations

from typing import Callable, Dict, List, Optional, Sequence

import numpy as np

from envtrend.raster import RasterFrame


def normalized_difference(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    den = a + b
    with np.errstate(divide="ignore", invalid="ignore"):
        out = (a - b) / den
    return np.where(den == 0, np.nan, out)


def ndvi(nir: np.ndarray, red: np.ndarray) -> np.ndarray:
    return normalized_difference(nir, red)


def db_to_linear(db: np.ndarray) -> np.ndarray:
    return np.power(10.0, np.asarray(db, dtype=np.float64) / 10.0)


def rvi(vv_db: np.ndarray, vh_db: np.ndarray) -> np.ndarray:
    vv = db_to_linear(vv_db)
    vh = db_to_linear(vh_db)
    with np.errstate(divide="ignore", invalid="ignore"):
        return 4.0 * vh / (vv + vh)


# name -> function of two input band arrays
INDICES: Dict[str, Callable[..., np.ndarray]] = {
    "nd": normalized_difference,
    "ndvi": ndvi,
    "rvi": rvi,
}


def derive_index(
    frames: Sequence[RasterFrame],
    name: str,
    bands: Sequence[str],
    out_band: Optional[str] = None,
) -> List[RasterFrame]:
    """Add index `name` computed from `bands` to every frame, as `out_band`.

    `bands` are the inputs in the index's argument order, e.g. [B8, B4] for ndvi and
    [VV, VH] for rvi. Frames lacking an input band are returned unchanged; compositing
    then treats them as not carrying the index band.
    """
    key = name.strip().lower()
    fn = INDICES.get(key)
    if fn is None:
        raise ValueError(f"Unknown index {name!r}; expected one of {sorted(INDICES)}")
    if len(bands) != 2:
        raise ValueError(f"Index {name!r} takes 2 input bands, got {list(bands)}")
    out_band = out_band or key.upper()

    out = []
    for f in frames:
        if all(b in f.bands for b in bands):
            out.append(f.with_band(out_band, fn(*(f.bands[b] for b in bands))))
        else:
            out.append(f)
    return out
