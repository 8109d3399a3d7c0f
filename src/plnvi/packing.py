"""Flat-buffer layout for named matrix parameter blocks.

Gradient-based optimizers work on a single 1-D vector, while the PLN
objective is naturally written in terms of several matrices (``Theta``,
``M``, ``S``).  :class:`ParameterLayout` bridges the two: it assigns
every named block a contiguous, row-major sub-range of one flat float64
buffer and hands out matrix-shaped views over that sub-range.

Layout
~~~~~~
Blocks are laid out back to back in the order given at construction::

    ┌──────────── Theta ────────────┬──────── M ────────┬──────── S ────────┐
    │ p·d values, row-major          │ n·p values        │ n·p values        │
    └────────────────────────────────┴───────────────────┴───────────────────┘
    offset 0                         p·d                 p·d + n·p

The same offset table is used for the initial parameter vector, the
per-coordinate tolerance vector and every gradient write, so all three
always agree on which coordinate belongs to which block.

Views vs. copies
~~~~~~~~~~~~~~~~
:meth:`ParameterLayout.map` returns a view: writes land directly in
the buffer, which is how the evaluators deposit gradient blocks without
an intermediate copy.  :meth:`ParameterLayout.copy` returns an owned
array that stays valid after the buffer is reused or released.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True)
class BlockSpec:
    """Placement of one named block inside the flat buffer."""

    name: str
    rows: int
    cols: int
    offset: int

    @property
    def shape(self) -> tuple[int, int]:
        return (self.rows, self.cols)

    @property
    def size(self) -> int:
        return self.rows * self.cols

    @property
    def stop(self) -> int:
        return self.offset + self.size


class ParameterLayout:
    """Ordered registry of ``(name, rows, cols)`` block descriptors.

    Blocks are addressed either by name or by their stable integer
    handle (position in construction order).  The layout is immutable
    after construction and carries no reference to any buffer, so one
    layout can serve many buffers (parameters, gradients, tolerances).

    Args:
        blocks: Ordered ``(name, (rows, cols))`` pairs.

    Raises:
        ValueError: On empty or duplicated names, or negative
            dimensions.
    """

    def __init__(self, blocks: Sequence[tuple[str, tuple[int, int]]]) -> None:
        specs: list[BlockSpec] = []
        handles: dict[str, int] = {}
        offset = 0
        for name, shape in blocks:
            if not name:
                msg = "Block names must be non-empty strings."
                raise ValueError(msg)
            if name in handles:
                msg = f"Duplicate block name {name!r}."
                raise ValueError(msg)
            rows, cols = (int(s) for s in shape)
            if rows < 0 or cols < 0:
                msg = f"Block {name!r} has negative shape {(rows, cols)}."
                raise ValueError(msg)
            handles[name] = len(specs)
            specs.append(BlockSpec(name, rows, cols, offset))
            offset += rows * cols
        self._specs: tuple[BlockSpec, ...] = tuple(specs)
        self._handles = handles
        self._packed_size = offset

    @classmethod
    def from_arrays(
        cls,
        blocks: Mapping[str, np.ndarray] | None = None,
        /,
        **named: np.ndarray,
    ) -> ParameterLayout:
        """Build a layout whose shapes are taken from initial values.

        Block order follows the mapping's iteration order, then the
        keyword order.  1-D inputs are treated as single-row blocks.
        """
        items = list((blocks or {}).items()) + list(named.items())
        shapes = []
        for name, value in items:
            arr = np.asarray(value)
            if arr.ndim == 1:
                arr = arr[None, :]
            if arr.ndim != 2:
                msg = f"Block {name!r} must be a matrix, got shape {arr.shape}."
                raise ValueError(msg)
            shapes.append((name, arr.shape))
        return cls(shapes)

    # ---- Introspection -------------------------------------------

    @property
    def packed_size(self) -> int:
        """Total flat length, the sum of ``rows * cols`` over blocks."""
        return self._packed_size

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(spec.name for spec in self._specs)

    def index(self, name: str) -> int:
        """Return the integer handle of block *name*."""
        try:
            return self._handles[name]
        except KeyError:
            msg = f"Unknown block {name!r}. Known blocks: {list(self.names)}."
            raise KeyError(msg) from None

    def spec(self, key: str | int) -> BlockSpec:
        """Return the :class:`BlockSpec` for a name or integer handle."""
        if isinstance(key, str):
            return self._specs[self.index(key)]
        return self._specs[key]

    def __len__(self) -> int:
        return len(self._specs)

    def __iter__(self) -> Iterator[BlockSpec]:
        return iter(self._specs)

    def __contains__(self, name: object) -> bool:
        return name in self._handles

    def __repr__(self) -> str:
        blocks = ", ".join(f"{s.name}={s.rows}x{s.cols}" for s in self._specs)
        return f"ParameterLayout({blocks}; packed_size={self._packed_size})"

    # ---- Buffer access -------------------------------------------

    def _check_buffer(self, buffer: np.ndarray) -> None:
        if not isinstance(buffer, np.ndarray) or buffer.ndim != 1:
            msg = "Parameter buffer must be a 1-D NumPy array."
            raise ValueError(msg)
        if buffer.shape[0] < self._packed_size:
            msg = (
                f"Parameter buffer has length {buffer.shape[0]}, "
                f"layout needs {self._packed_size}."
            )
            raise ValueError(msg)
        if not buffer.flags.c_contiguous:
            msg = "Parameter buffer must be C-contiguous to be mapped in place."
            raise ValueError(msg)

    def map(
        self, key: str | int, buffer: np.ndarray, *, readonly: bool = False
    ) -> np.ndarray:
        """Return a ``(rows, cols)`` view of block *key* inside *buffer*.

        Writes through the returned array modify *buffer*.  With
        ``readonly=True`` the view is flagged non-writeable, which is
        how the evaluators read candidate vectors handed over by the
        optimizer.

        Raises:
            ValueError: If *buffer* is not a 1-D C-contiguous array of
                at least :attr:`packed_size` elements.
        """
        self._check_buffer(buffer)
        spec = self.spec(key)
        view = buffer[spec.offset : spec.stop].reshape(spec.rows, spec.cols)
        if readonly:
            view.flags.writeable = False
        return view

    def copy(self, key: str | int, buffer: np.ndarray) -> np.ndarray:
        """Return an owned copy of block *key* decoupled from *buffer*."""
        return np.array(self.map(key, buffer), copy=True)

    def pack(self, blocks: Mapping[str, np.ndarray]) -> np.ndarray:
        """Allocate a new flat vector holding *blocks*.

        Every layout block must be present with exactly its declared
        shape; 1-D values are accepted for single-row blocks.

        Raises:
            ValueError: On missing, unknown, or mis-shaped blocks.
        """
        missing = [name for name in self.names if name not in blocks]
        extra = [name for name in blocks if name not in self._handles]
        if missing or extra:
            msg = (
                f"Cannot pack blocks: missing {missing}, unknown {extra} "
                f"(layout has {list(self.names)})."
            )
            raise ValueError(msg)
        buffer = np.empty(self._packed_size, dtype=np.float64)
        for spec in self._specs:
            self.assign(spec.name, buffer, blocks[spec.name])
        return buffer

    def assign(self, key: str | int, buffer: np.ndarray, value: np.ndarray) -> None:
        """Write *value* into block *key* of *buffer*, checking its shape."""
        spec = self.spec(key)
        arr = np.asarray(value, dtype=np.float64)
        if arr.ndim == 1 and spec.rows == 1:
            arr = arr[None, :]
        if arr.shape != spec.shape:
            msg = f"Block {spec.name!r} expects shape {spec.shape}, got {arr.shape}."
            raise ValueError(msg)
        self.map(key, buffer)[...] = arr

    def unpack(self, buffer: np.ndarray) -> dict[str, np.ndarray]:
        """Return owned copies of every block, keyed by name."""
        return {spec.name: self.copy(spec.name, buffer) for spec in self._specs}


__all__ = ["BlockSpec", "ParameterLayout"]
