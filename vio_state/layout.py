#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
State Layout Module

Builder-composed schema for composite filter states.

A layout is an ordered list of named blocks. Each block has a count
(array length, 1 for single elements), a nominal dimension (storage in the
mean vector) and an error dimension (rows/cols in the covariance). Offsets
are resolved once at construction, so the mean vector length and the
covariance dimension are both derived from the same table.

Example (core IMU part of the filter state):

    pos   nominal 3  error 3
    vel   nominal 3  error 3
    att   nominal 4  error 3   (quaternion, 3D rotation error)

    layout = (StateLayout.builder()
              .add("pos", 3)
              .add("vel", 3)
              .add("att", 4, error_dim=3)
              .build())
    layout.nominal_dim   # 10
    layout.error_dim     # 9
    layout.error_index("att")  # 6
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Tuple


@dataclass(frozen=True)
class BlockSpec:
    """One named block of a composite state."""

    name: str
    nominal_dim: int
    error_dim: int
    count: int = 1
    nominal_offset: int = 0
    error_offset: int = 0

    @property
    def nominal_size(self) -> int:
        return self.nominal_dim * self.count

    @property
    def error_size(self) -> int:
        return self.error_dim * self.count


class StateLayout:
    """
    Resolved block offsets of a composite state.

    Use StateLayout.builder() to compose a layout.
    """

    def __init__(self, blocks: List[Tuple[str, int, int, int]]):
        self._blocks: Dict[str, BlockSpec] = {}
        self._order: List[str] = []
        nominal_offset = 0
        error_offset = 0
        for name, nominal_dim, error_dim, count in blocks:
            if name in self._blocks:
                raise ValueError(f"Duplicate block name in layout: {name!r}")
            if nominal_dim < 0 or error_dim < 0 or count < 0:
                raise ValueError(f"Block {name!r} has negative dimension or count")
            spec = BlockSpec(name, nominal_dim, error_dim, count, nominal_offset, error_offset)
            self._blocks[name] = spec
            self._order.append(name)
            nominal_offset += spec.nominal_size
            error_offset += spec.error_size
        self.nominal_dim = nominal_offset
        self.error_dim = error_offset

    @staticmethod
    def builder() -> "LayoutBuilder":
        return LayoutBuilder()

    @property
    def names(self) -> List[str]:
        return list(self._order)

    def block(self, name: str) -> BlockSpec:
        try:
            return self._blocks[name]
        except KeyError:
            raise KeyError(f"Unknown state block {name!r}") from None

    def _check_element(self, spec: BlockSpec, i: int):
        if not 0 <= i < spec.count:
            raise IndexError(f"Index {i} out of range for block {spec.name!r} (count={spec.count})")

    def nominal_slice(self, name: str, i: int = 0) -> slice:
        """Slice of element i of block `name` in the mean vector."""
        spec = self.block(name)
        self._check_element(spec, i)
        start = spec.nominal_offset + i * spec.nominal_dim
        return slice(start, start + spec.nominal_dim)

    def error_index(self, name: str, i: int = 0) -> int:
        """First covariance row/col of element i of block `name`."""
        spec = self.block(name)
        self._check_element(spec, i)
        return spec.error_offset + i * spec.error_dim

    def error_slice(self, name: str, i: int = 0) -> slice:
        start = self.error_index(name, i)
        return slice(start, start + self.block(name).error_dim)

    def block_error_slice(self, name: str) -> slice:
        """Covariance rows/cols of all elements of block `name`."""
        spec = self.block(name)
        return slice(spec.error_offset, spec.error_offset + spec.error_size)

    def error_owner(self, idx: int) -> Tuple[str, int, int]:
        """
        Map a covariance index back to (block name, element, component).

        Raises:
            IndexError: idx outside [0, error_dim)
        """
        if not 0 <= idx < self.error_dim:
            raise IndexError(f"Covariance index {idx} out of range (dim={self.error_dim})")
        for name in self._order:
            spec = self._blocks[name]
            if spec.error_offset <= idx < spec.error_offset + spec.error_size:
                rel = idx - spec.error_offset
                return name, rel // spec.error_dim, rel % spec.error_dim
        raise IndexError(f"Covariance index {idx} not owned by any block")

    def __len__(self):
        return len(self._order)

    def __contains__(self, name: str) -> bool:
        return name in self._blocks

    def __repr__(self):
        rows = [f"  {n}: nominal {s.nominal_dim}x{s.count} @ {s.nominal_offset}, "
                f"error {s.error_dim}x{s.count} @ {s.error_offset}"
                for n, s in ((n, self._blocks[n]) for n in self._order)]
        return "\n".join([f"StateLayout(nominal={self.nominal_dim}, error={self.error_dim})"] + rows)


@dataclass
class LayoutBuilder:
    """Accumulates (name, nominal_dim, error_dim, count) entries in order."""

    _blocks: List[Tuple[str, int, int, int]] = field(default_factory=list)

    def add(self, name: str, nominal_dim: int, error_dim: int = None, count: int = 1) -> "LayoutBuilder":
        if error_dim is None:
            error_dim = nominal_dim
        self._blocks.append((name, int(nominal_dim), int(error_dim), int(count)))
        return self

    def build(self) -> StateLayout:
        return StateLayout(self._blocks)
