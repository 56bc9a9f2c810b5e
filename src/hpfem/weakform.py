"""Weak forms for -div(lambda grad u) = f with piecewise material coefficients."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterable, Mapping, Union

import numpy as np
from numpy.typing import NDArray

Coefficient = Union[float, Callable[[NDArray[np.float64], NDArray[np.float64]], NDArray[np.float64]]]


def _evaluate(value: Coefficient, x: NDArray[np.float64], y: NDArray[np.float64]) -> NDArray:
    if callable(value):
        return np.array(np.broadcast_to(np.asarray(value(x, y), dtype=np.float64), x.shape))
    return np.full(x.shape, float(value))


@dataclass(frozen=True)
class DiffusionMatrixForm:
    """Bilinear form ∫ lambda grad(u) . grad(v) dx over one region."""

    region: str
    coefficient: Coefficient = 1.0

    def evaluate(self, x: NDArray[np.float64], y: NDArray[np.float64]) -> NDArray[np.float64]:
        return _evaluate(self.coefficient, x, y)


@dataclass(frozen=True)
class SourceVectorForm:
    """Linear form ∫ f v dx over one region, or over every region when ``region`` is None."""

    value: Coefficient = 0.0
    region: str | None = None

    def evaluate(self, x: NDArray[np.float64], y: NDArray[np.float64]) -> NDArray[np.float64]:
        return _evaluate(self.value, x, y)


class WeakForm:
    """Immutable collection of matrix and vector forms."""

    def __init__(
        self,
        matrix_forms: Iterable[DiffusionMatrixForm] = (),
        vector_forms: Iterable[SourceVectorForm] = (),
    ):
        self._matrix_forms = tuple(matrix_forms)
        self._vector_forms = tuple(vector_forms)

    @property
    def matrix_forms(self) -> tuple[DiffusionMatrixForm, ...]:
        return self._matrix_forms

    @property
    def vector_forms(self) -> tuple[SourceVectorForm, ...]:
        return self._vector_forms

    @property
    def regions(self) -> set[str]:
        """Regions covered by at least one matrix form."""
        return {form.region for form in self._matrix_forms}

    def get_forms(
        self, region: str
    ) -> tuple[tuple[DiffusionMatrixForm, ...], tuple[SourceVectorForm, ...]]:
        """Matrix forms of ``region`` and the global plus region-specific vector forms."""
        matrix = tuple(f for f in self._matrix_forms if f.region == region)
        vector = tuple(f for f in self._vector_forms if f.region is None or f.region == region)
        return matrix, vector

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(regions={sorted(self.regions)}, "
            f"vector_forms={len(self._vector_forms)})"
        )


class WeakFormPoisson(WeakForm):
    """
    Steady heat conduction: -div(lambda grad u) = f.

    Parameters
    ----------
    regions : mapping
        Region name -> thermal conductivity (constant or callable).
    source : float, callable or mapping
        Volumetric heat source, either global or per region.
    """

    def __init__(
        self,
        regions: Mapping[str, Coefficient],
        source: Coefficient | Mapping[str, Coefficient] = 0.0,
    ):
        if not regions:
            raise ValueError("WeakFormPoisson needs at least one region")
        matrix = [DiffusionMatrixForm(name, coeff) for name, coeff in regions.items()]
        if isinstance(source, Mapping):
            vector = [SourceVectorForm(value, name) for name, value in source.items()]
        else:
            vector = [SourceVectorForm(source)]
        super().__init__(matrix, vector)
