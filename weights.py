"""
Weight tables for the N-tuple network.

File layout (native byte order):
    uint32                 number of tables
    per table: uint64      table length
               float32[n]  weights
"""

import logging
import re
from typing import Iterator, List, Sequence, Union

import numpy as np


logger = logging.getLogger(__name__)

COUNT_DTYPE = np.uint32
LENGTH_DTYPE = np.uint64
WEIGHT_DTYPE = np.float32


def _fatal(message: str) -> None:
    """Weight files are never silently skipped: log and abort the process."""
    logger.error(message)
    raise SystemExit(message)


class WeightStore:
    """Ordered collection of independently sized float32 weight tables."""

    def __init__(self):
        self.tables: List[np.ndarray] = []

    def __len__(self) -> int:
        return len(self.tables)

    def __getitem__(self, i: int) -> np.ndarray:
        return self.tables[i]

    def __iter__(self) -> Iterator[np.ndarray]:
        return iter(self.tables)

    @property
    def sizes(self) -> List[int]:
        return [int(t.size) for t in self.tables]

    def init(self, sizes: Union[str, Sequence[int]]) -> None:
        """
        Append one zero-filled table per size.

        Args:
            sizes: Table lengths, or an option string such as "65536,65536"
                   (any non-digit character separates sizes)
        """
        if isinstance(sizes, str):
            sizes = [int(s) for s in re.split(r"\D+", sizes) if s]
        for size in sizes:
            if size <= 0:
                raise ValueError(f"Weight table size must be positive, got {size}")
            self.tables.append(np.zeros(size, dtype=WEIGHT_DTYPE))
        logger.debug(f"Initialized weight tables: {self.sizes}")

    def load(self, path: str) -> None:
        """Replace all tables with the ones stored in a weight file."""
        try:
            with open(path, "rb") as f:
                tables = []
                count = self._read(f, COUNT_DTYPE, 1, path)[0]
                for _ in range(int(count)):
                    length = int(self._read(f, LENGTH_DTYPE, 1, path)[0])
                    tables.append(self._read(f, WEIGHT_DTYPE, length, path).copy())
        except OSError as e:
            _fatal(f"Cannot read weights from {path}: {e}")

        self.tables = tables
        logger.info(f"Weights loaded from {path} ({len(tables)} tables)")

    @staticmethod
    def _read(f, dtype, count: int, path: str) -> np.ndarray:
        nbytes = np.dtype(dtype).itemsize * count
        data = f.read(nbytes)
        if len(data) != nbytes:
            _fatal(f"Truncated weight file {path}")
        return np.frombuffer(data, dtype=dtype, count=count)

    def save(self, path: str) -> None:
        """Write every table to a weight file, truncating it first."""
        try:
            with open(path, "wb") as f:
                f.write(np.array([len(self.tables)], dtype=COUNT_DTYPE).tobytes())
                for table in self.tables:
                    f.write(np.array([table.size], dtype=LENGTH_DTYPE).tobytes())
                    f.write(table.astype(WEIGHT_DTYPE, copy=False).tobytes())
        except OSError as e:
            _fatal(f"Cannot write weights to {path}: {e}")

        logger.info(f"Weights saved to {path}")
