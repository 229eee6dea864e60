"""Named, fixed-size vector signals.

A VectorSignal describes the layout of a state, input or output vector: its
dimension, an optional frame name and one name per coordinate. The
simulation layers use it to validate arrays, to label DataFrame columns and
to check that connected systems agree on what a signal means.
"""

from typing import Dict, Iterable, Optional, Sequence

import numpy as np


class VectorSignal:
    """Typed, named fixed-size numeric vector.

    Parameters
    ----------
    dim : int
        Number of elements
    name : str, optional
        Frame name. Anonymous frames (name=None) match any frame of the
        same dimension when systems are combined.
    coordinates : sequence of str, optional
        Name of each element. Defaults to [f'{prefix}1', ...].
    prefix : str, default='x'
        Prefix used for default coordinate names

    Examples
    --------
    >>> frame = VectorSignal(2, name="ball_state", coordinates=["h", "v"])
    >>> frame.validate([1.0, 0.0])
    array([1., 0.])
    >>> frame.to_dict([1.0, 0.0])
    {'h': 1.0, 'v': 0.0}
    """

    def __init__(
        self,
        dim: int,
        name: Optional[str] = None,
        coordinates: Optional[Sequence[str]] = None,
        prefix: str = "x",
    ):
        dim = int(dim)
        if dim < 0:
            raise ValueError(f"dim must be non-negative, got {dim}")
        if coordinates is None:
            coordinates = [f"{prefix}{i+1}" for i in range(dim)]
        coordinates = tuple(str(c) for c in coordinates)
        if len(coordinates) != dim:
            raise ValueError(
                f"Expected {dim} coordinate names, got {len(coordinates)}"
            )
        if len(set(coordinates)) != dim:
            raise ValueError(f"Coordinate names must be unique: {coordinates}")
        self.dim = dim
        self.name = name
        self.coordinates = coordinates

    @property
    def is_anonymous(self) -> bool:
        return self.name is None

    def matches(self, other: "VectorSignal") -> bool:
        """Check whether a signal in this frame can feed the other frame."""
        if self.dim != other.dim:
            return False
        if self.is_anonymous or other.is_anonymous:
            return True
        return self == other

    def validate(self, value, what: str = "signal") -> np.ndarray:
        """Coerce value to a 1-D float array of the declared size."""
        arr = np.asarray(value, dtype=float).reshape(-1)
        if arr.size != self.dim:
            raise ValueError(
                f"{what} has {arr.size} elements, expected {self.dim}"
                + (f" ({self.name})" if self.name else "")
            )
        return arr

    def index(self, coordinate: str) -> int:
        """Position of a named coordinate."""
        try:
            return self.coordinates.index(coordinate)
        except ValueError:
            raise KeyError(
                f"Unknown coordinate '{coordinate}', "
                f"expected one of {list(self.coordinates)}"
            ) from None

    def to_dict(self, value) -> Dict[str, float]:
        arr = self.validate(value)
        return {c: float(v) for c, v in zip(self.coordinates, arr)}

    def from_dict(self, values: Dict[str, float]) -> np.ndarray:
        """Build a vector from a coordinate-name mapping.

        All coordinates must be present.
        """
        missing = [c for c in self.coordinates if c not in values]
        if missing:
            raise KeyError(f"Missing values for coordinates {missing}")
        return np.array([float(values[c]) for c in self.coordinates])

    @classmethod
    def concat(
        cls, signals: Iterable["VectorSignal"], name: Optional[str] = None
    ) -> "VectorSignal":
        """Stack several frames into one.

        Repeated coordinate names get a numeric suffix so the result keeps
        unique column labels.
        """
        coords = []
        seen = set()
        for signal in signals:
            for c in signal.coordinates:
                label = c
                k = 2
                while label in seen:
                    label = f"{c}_{k}"
                    k += 1
                seen.add(label)
                coords.append(label)
        return cls(len(coords), name=name, coordinates=coords)

    def __eq__(self, other):
        if not isinstance(other, VectorSignal):
            return NotImplemented
        return (
            self.dim == other.dim
            and self.name == other.name
            and self.coordinates == other.coordinates
        )

    def __hash__(self):
        return hash((self.dim, self.name, self.coordinates))

    def __len__(self):
        return self.dim

    def __repr__(self):
        return (
            f"VectorSignal(dim={self.dim}, name={self.name!r}, "
            f"coordinates={list(self.coordinates)})"
        )
