"""
HEX Pixeliser

A single-file Python CLI tool that re-tiles a raster image onto a hexagonal
(or square) grid. Every cell of the grid is painted with the average colour of
the source pixels it covers. Cells are addressed in axial coordinates and
pixels are assigned to cells with cube rounding, so both passes of the
aggregate-then-render pipeline agree on every boundary pixel.

Usage:
    python hexpxl.py photo.png photo_hex.png 24
    python hexpxl.py photo.png photo_sqr.png 16 --mode square
    python hexpxl.py photo.png out.png 32 --orientation flat --workers 4 --debug
    python hexpxl.py photo.png out.png --import_settings settings.json
"""

import argparse
import io
import json
import math
import os
import re
import sys
import tempfile
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Iterable, List, NamedTuple, Optional, Tuple

import numpy as np
from PIL import Image


Color = Tuple[int, int, int, int]
CellId = Tuple[int, int]

SQRT3: float = math.sqrt(3.0)

MODES: Tuple[str, ...] = ("hex", "square")
ORIENTATIONS: Tuple[str, ...] = ("pointy", "flat")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------
class HexPixelError(Exception):
    """Base class for every user-facing error raised by the pixeliser."""


class InvalidParameterError(HexPixelError, ValueError):
    """A grid parameter or image dimension is unusable (e.g. cell size <= 0)."""


class DecodeError(HexPixelError):
    """The input image could not be read or decoded."""


class EncodeError(HexPixelError):
    """The output image could not be encoded."""


class UnsupportedFormatError(EncodeError):
    """The output path names a format the image codec cannot write."""


class OutputWriteError(HexPixelError, OSError):
    """The encoded output could not be written to its destination."""


class InternalInvariantViolation(AssertionError):
    """A rendered pixel has no aggregated cell.

    Only possible when the two passes disagree on cell assignment, which is a
    defect in the program rather than a problem with the input.
    """


# ---------------------------------------------------------------------------
# Rounding
# ---------------------------------------------------------------------------
def _round_half_away(values: np.ndarray) -> np.ndarray:
    """Element-wise round half away from zero on a float array.

    The integer part is split off before comparing the remainder with 0.5,
    so values just below a half (e.g. 0.49999999999999994) round down.
    """
    magnitude = np.abs(values)
    whole = np.floor(magnitude)
    return np.copysign(whole + (magnitude - whole >= 0.5), values)


def round_half_away(value):
    """Round to the nearest integer, sending exact halves away from zero.

    This is the rounding rule of the program. Hex cell assignment uses it
    directly; channel averaging uses divide_half_away, its exact integer form.

    Args:
        value: A real number or an array of them.

    Returns:
        An int for a scalar, an int64 array for an array.
    """
    rounded = _round_half_away(np.asarray(value, dtype=np.float64))
    if rounded.ndim == 0:
        return int(rounded)
    return rounded.astype(np.int64)


def divide_half_away(numerator: int, denominator: int) -> int:
    """Return round_half_away(numerator / denominator) in exact integer arithmetic.

    Both arguments must be non-negative and the denominator positive, which
    holds for channel sums and pixel counts.
    """
    return (2 * numerator + denominator) // (2 * denominator)


# ---------------------------------------------------------------------------
# GridParameters
# ---------------------------------------------------------------------------
class GridParameters:
    """Immutable description of the grid used for one pipeline run.

    Attributes:
        cell_size: Hexagon circumradius, or square side, in pixels.
        mode: Either 'hex' or 'square'.
        orientation: Either 'pointy' or 'flat' (hex mode only).
    """

    def __init__(self, cell_size: float, mode: str = "hex", orientation: str = "pointy") -> None:
        """Validate and store the grid parameters.

        Args:
            cell_size: Positive, finite cell size in pixels.
            mode: Grid shape, one of MODES.
            orientation: Hexagon orientation, one of ORIENTATIONS.

        Raises:
            InvalidParameterError: If any parameter is out of range.
        """
        if isinstance(cell_size, bool) or not isinstance(cell_size, (int, float)):
            raise InvalidParameterError(f"Cell size must be a number, got {cell_size!r}")
        if not math.isfinite(cell_size) or cell_size <= 0:
            raise InvalidParameterError(f"Cell size must be a positive number, got {cell_size}")
        if mode not in MODES:
            raise InvalidParameterError(
                f"Invalid mode '{mode}'. Must be one of: {', '.join(MODES)}")
        if orientation not in ORIENTATIONS:
            raise InvalidParameterError(
                f"Invalid orientation '{orientation}'. Must be one of: {', '.join(ORIENTATIONS)}")
        self._cell_size: float = cell_size
        self._mode: str = mode
        self._orientation: str = orientation

    @property
    def cell_size(self) -> float:
        """Return the cell size in pixels."""
        return self._cell_size

    @property
    def mode(self) -> str:
        """Return the grid shape mode."""
        return self._mode

    @property
    def orientation(self) -> str:
        """Return the hexagon orientation."""
        return self._orientation

    def _key(self) -> Tuple[float, str, str]:
        return (self._cell_size, self._mode, self._orientation)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, GridParameters):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self) -> int:
        return hash(self._key())

    def __repr__(self) -> str:
        return (f"GridParameters(cell_size={self._cell_size!r}, "
                f"mode={self._mode!r}, orientation={self._orientation!r})")


# ---------------------------------------------------------------------------
# GridGeometry
# ---------------------------------------------------------------------------
class GridGeometry:
    """Stateless mapping between pixel space and cell identifiers.

    The hex cell (0, 0) is centred on the image origin and a pixel is sampled
    at its integer coordinate. cell_of accepts scalars or coordinate arrays
    and applies the same float operations element-wise, so a pixel gets the
    same cell whether it is mapped alone or as part of a band. The same
    instance is shared by the aggregation and render passes.
    """

    def cell_of(self, x, y, params: GridParameters) -> Tuple:
        """Return the cell containing pixel (x, y).

        Args:
            x: Pixel column, or an array of columns.
            y: Pixel row, or an array of rows (same shape as x).
            params: Grid parameters of the current run.

        Returns:
            Axial (q, r) in hex mode, or (column, row) tile indices in
            square mode. Ints for scalar input, int64 arrays otherwise.
        """
        x = np.asarray(x, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64)
        size = params.cell_size
        if params.mode == "square":
            return self._as_cells(np.floor(x / size), np.floor(y / size))
        if params.orientation == "pointy":
            q = (SQRT3 / 3.0 * x - y / 3.0) / size
            r = (2.0 / 3.0 * y) / size
        else:
            q = (2.0 / 3.0 * x) / size
            r = (-x / 3.0 + SQRT3 / 3.0 * y) / size
        return self.cube_round(q, r)

    def cube_round(self, q, r) -> Tuple:
        """Round fractional axial coordinates to the nearest hex.

        Each cube component is rounded half away from zero. The component
        with the largest rounding delta is then rebuilt from the other two
        so that q + r + s == 0 holds. Ties between deltas resolve in the
        fixed order q, r, s.

        Args:
            q: Fractional axial q (scalar or array).
            r: Fractional axial r (scalar or array).

        Returns:
            The integer axial coordinate (q, r).
        """
        q = np.asarray(q, dtype=np.float64)
        r = np.asarray(r, dtype=np.float64)
        s = -q - r
        rq = _round_half_away(q)
        rr = _round_half_away(r)
        rs = _round_half_away(s)

        dq = np.abs(rq - q)
        dr = np.abs(rr - r)
        ds = np.abs(rs - s)

        fix_q = (dq > dr) & (dq > ds)
        fix_r = ~fix_q & (dr > ds)
        rq = np.where(fix_q, -rr - rs, rq)
        rr = np.where(fix_r, -rq - rs, rr)
        return self._as_cells(rq, rr)

    @staticmethod
    def _as_cells(a: np.ndarray, b: np.ndarray):
        a = np.asarray(a).astype(np.int64)
        b = np.asarray(b).astype(np.int64)
        if a.ndim == 0:
            return (int(a), int(b))
        return (a, b)

    def center_of(self, cell: CellId, params: GridParameters) -> Tuple[float, float]:
        """Return the pixel-space centre of a cell.

        Args:
            cell: Cell identifier produced by cell_of.
            params: Grid parameters of the current run.

        Returns:
            A (fx, fy) tuple of pixel coordinates.
        """
        a, b = cell
        size = params.cell_size
        if params.mode == "square":
            return (size * (a + 0.5), size * (b + 0.5))
        if params.orientation == "pointy":
            return (size * (SQRT3 * a + SQRT3 / 2.0 * b), size * 1.5 * b)
        return (size * 1.5 * a, size * (SQRT3 / 2.0 * a + SQRT3 * b))

    def cell_area(self, params: GridParameters) -> float:
        """Return the area of one cell in square pixels."""
        size = params.cell_size
        if params.mode == "square":
            return size * size
        return 3.0 * SQRT3 / 2.0 * size * size


# ---------------------------------------------------------------------------
# PixelBuffer
# ---------------------------------------------------------------------------
class PixelBuffer:
    """Dense RGBA raster backed by a (height, width, 4) uint8 array.

    Attributes:
        width: Number of columns.
        height: Number of rows.
        array: The pixel data, indexed [y, x, channel].
    """

    def __init__(
        self,
        width: int,
        height: int,
        pixels=None,
        fill: Color = (0, 0, 0, 0),
    ) -> None:
        """Create a buffer, either from existing pixels or filled with one colour.

        Args:
            width: Positive column count.
            height: Positive row count.
            pixels: Optional row-major sequence of width * height colours, or
                an array holding width * height * 4 channel values.
            fill: Colour used when pixels is not given.

        Raises:
            InvalidParameterError: If a dimension is not positive or the pixel
                data has the wrong size.
        """
        if width <= 0 or height <= 0:
            raise InvalidParameterError(
                f"Image dimensions must be positive, got {width} x {height}")
        if pixels is None:
            array = np.empty((height, width, 4), dtype=np.uint8)
            array[...] = fill
        else:
            array = np.array(pixels, dtype=np.uint8)
            if array.size != width * height * 4:
                raise InvalidParameterError(
                    f"Expected {width * height} pixels for {width} x {height}, "
                    f"got {array.size // 4}")
            array = array.reshape(height, width, 4)
        self.width: int = width
        self.height: int = height
        self.array: np.ndarray = array

    @classmethod
    def from_bytes(cls, width: int, height: int, data: bytes) -> "PixelBuffer":
        """Build a buffer from packed RGBA bytes (4 bytes per pixel)."""
        return cls(width, height, np.frombuffer(data, dtype=np.uint8))

    def to_bytes(self) -> bytes:
        """Pack the buffer into RGBA bytes."""
        return self.array.tobytes()

    @property
    def pixels(self) -> List[Color]:
        """Row-major list of (r, g, b, a) tuples."""
        return [tuple(px) for px in self.array.reshape(-1, 4).tolist()]

    def rows(self, start: int, stop: int) -> np.ndarray:
        """Return a writable view of rows start..stop, shape (stop - start, width, 4)."""
        return self.array[start:stop]

    def get(self, x: int, y: int) -> Color:
        return tuple(self.array[y, x].tolist())

    def set(self, x: int, y: int, color: Color) -> None:
        self.array[y, x] = color

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PixelBuffer):
            return NotImplemented
        return ((self.width, self.height) == (other.width, other.height)
                and np.array_equal(self.array, other.array))

    def __repr__(self) -> str:
        return f"PixelBuffer({self.width} x {self.height})"


def _band_coordinates(width: int, rows: range) -> Tuple[np.ndarray, np.ndarray]:
    """Return (xs, ys) pixel coordinate grids for a contiguous band of rows."""
    ys, xs = np.mgrid[rows.start:rows.stop, 0:width]
    return xs, ys


def _unique_cells(q: np.ndarray, r: np.ndarray) -> Tuple[List[CellId], np.ndarray]:
    """Group flattened cell arrays.

    Returns:
        The distinct cells as (q, r) int tuples, and for every input element
        the index of its cell in that list.
    """
    keys, inverse = np.unique(np.stack([q.ravel(), r.ravel()], axis=1),
                              axis=0, return_inverse=True)
    return [tuple(key) for key in keys.tolist()], inverse.reshape(-1)


# ---------------------------------------------------------------------------
# CellAccumulator
# ---------------------------------------------------------------------------
class CellAccumulator:
    """Per-cell running channel sums and pixel counts.

    Entries are created on the first contributing pixel and are never
    removed. Sums are Python ints, so they cannot overflow.
    """

    def __init__(self) -> None:
        self._entries: Dict[CellId, List[int]] = {}
        self._finalized: bool = False

    def add(self, cell: CellId, color: Color) -> None:
        """Fold one pixel's channels into the entry for cell.

        Args:
            cell: Cell the pixel belongs to.
            color: The pixel's (r, g, b, a) colour.

        Raises:
            RuntimeError: If the accumulator was already finalized.
        """
        self._check_open()
        self._fold(cell, color[0], color[1], color[2], color[3], 1)

    def add_many(self, q: np.ndarray, r: np.ndarray, colors: np.ndarray) -> None:
        """Fold a batch of pixels in one step.

        Args:
            q: First cell coordinate of every pixel.
            r: Second cell coordinate of every pixel.
            colors: (n, 4) channel values in the same pixel order.

        Raises:
            RuntimeError: If the accumulator was already finalized.
        """
        self._check_open()
        cells, inverse = _unique_cells(q, r)
        counts = np.bincount(inverse, minlength=len(cells))
        sums = np.zeros((len(cells), 4), dtype=np.int64)
        np.add.at(sums, inverse, colors.reshape(-1, 4).astype(np.int64))
        for cell, (sr, sg, sb, sa), count in zip(cells, sums.tolist(), counts.tolist()):
            self._fold(cell, sr, sg, sb, sa, count)

    def _fold(self, cell: CellId, r: int, g: int, b: int, a: int, count: int) -> None:
        entry = self._entries.get(cell)
        if entry is None:
            entry = [0, 0, 0, 0, 0]
            self._entries[cell] = entry
        entry[0] += int(r)
        entry[1] += int(g)
        entry[2] += int(b)
        entry[3] += int(a)
        entry[4] += int(count)

    def merge(self, other: "CellAccumulator") -> "CellAccumulator":
        """Add the sums and counts of another accumulator into this one.

        The two accumulators are expected to cover disjoint pixel sets.
        Merging is associative and commutative.

        Args:
            other: Accumulator to fold in. It is not modified.

        Returns:
            This accumulator.

        Raises:
            RuntimeError: If this accumulator was already finalized.
        """
        self._check_open()
        for cell, theirs in other._entries.items():
            self._fold(cell, *theirs)
        return self

    def finalize(self) -> Dict[CellId, Color]:
        """Return the average colour of every populated cell.

        Each channel is sum / count rounded half away from zero, computed
        with divide_half_away. The accumulator is frozen afterwards.

        Returns:
            A mapping from cell to average (r, g, b, a).
        """
        self._finalized = True
        averages: Dict[CellId, Color] = {}
        for cell, (r, g, b, a, count) in self._entries.items():
            averages[cell] = (
                divide_half_away(r, count),
                divide_half_away(g, count),
                divide_half_away(b, count),
                divide_half_away(a, count),
            )
        return averages

    def count(self, cell: CellId) -> int:
        """Return the number of pixels folded into cell (0 if none)."""
        entry = self._entries.get(cell)
        return entry[4] if entry else 0

    def pixel_total(self) -> int:
        """Return the number of pixels folded in across all cells."""
        return sum(entry[4] for entry in self._entries.values())

    def _check_open(self) -> None:
        if self._finalized:
            raise RuntimeError("CellAccumulator is finalized and can no longer be modified")

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, cell: object) -> bool:
        return cell in self._entries


# ---------------------------------------------------------------------------
# Aggregator
# ---------------------------------------------------------------------------
class Aggregator:
    """Aggregation pass: folds every source pixel into its cell."""

    def __init__(self, geometry: GridGeometry) -> None:
        self._geometry: GridGeometry = geometry

    def run(
        self,
        buffer: PixelBuffer,
        params: GridParameters,
        rows: Optional[range] = None,
    ) -> CellAccumulator:
        """Aggregate a buffer, or a band of its rows, into a fresh accumulator.

        Args:
            buffer: Source pixels.
            params: Validated grid parameters.
            rows: Contiguous rows to visit. Defaults to every row.

        Returns:
            An accumulator owned by the caller.
        """
        if rows is None:
            rows = range(buffer.height)
        accumulator = CellAccumulator()
        if len(rows) == 0:
            return accumulator
        xs, ys = _band_coordinates(buffer.width, rows)
        q, r = self._geometry.cell_of(xs, ys, params)
        accumulator.add_many(q, r, buffer.rows(rows.start, rows.stop))
        return accumulator


# ---------------------------------------------------------------------------
# Renderer
# ---------------------------------------------------------------------------
class Renderer:
    """Render pass: paints every output pixel with its cell's average."""

    def __init__(self, geometry: GridGeometry) -> None:
        self._geometry: GridGeometry = geometry

    def run(
        self,
        buffer: PixelBuffer,
        params: GridParameters,
        averages: Dict[CellId, Color],
        rows: Optional[range] = None,
        output: Optional[PixelBuffer] = None,
    ) -> PixelBuffer:
        """Write cell averages for the requested rows.

        Args:
            buffer: Source buffer, used only for its dimensions.
            params: The grid parameters the averages were aggregated with.
            averages: Finalized cell -> colour table.
            rows: Contiguous rows to paint. Defaults to every row.
            output: Buffer to paint into. A new one is allocated if omitted.

        Returns:
            The output buffer.

        Raises:
            InternalInvariantViolation: If a pixel's cell has no average.
        """
        if output is None:
            output = PixelBuffer(buffer.width, buffer.height)
        if rows is None:
            rows = range(buffer.height)
        if len(rows) == 0:
            return output
        xs, ys = _band_coordinates(buffer.width, rows)
        q, r = self._geometry.cell_of(xs, ys, params)
        cells, inverse = _unique_cells(q, r)

        palette = np.empty((len(cells), 4), dtype=np.uint8)
        for i, cell in enumerate(cells):
            try:
                palette[i] = averages[cell]
            except KeyError:
                raise InternalInvariantViolation(
                    f"Cell {cell} covers rows {rows.start}..{rows.stop - 1} "
                    f"but was never aggregated") from None

        target = output.rows(rows.start, rows.stop)
        target[...] = palette[inverse].reshape(target.shape)
        return output


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------
class PipelineStats(NamedTuple):
    """Figures from the most recent pipeline run, for the debug report."""

    cells: int
    expected_cells: float
    bands: int


class Pipeline:
    """Validates inputs, then runs aggregation and rendering.

    With more than one worker the image is split into contiguous row bands.
    Each band is aggregated into its own accumulator and the partial
    accumulators are merged before finalizing. Rendering then paints the
    bands into one shared output buffer. Output is identical for any worker
    count.
    """

    def __init__(self, geometry: Optional[GridGeometry] = None, workers: int = 1) -> None:
        self._geometry: GridGeometry = geometry or GridGeometry()
        self._workers: int = workers
        self.last_stats: Optional[PipelineStats] = None

    @staticmethod
    def check_workers(workers: int) -> None:
        """Raise InvalidParameterError unless workers is a positive int."""
        if isinstance(workers, bool) or not isinstance(workers, int) or workers < 1:
            raise InvalidParameterError(f"Worker count must be a positive integer, got {workers!r}")

    @staticmethod
    def row_bands(height: int, workers: int) -> List[range]:
        """Split rows 0..height into at most `workers` contiguous bands.

        Args:
            height: Number of rows.
            workers: Requested number of bands.

        Returns:
            A list of non-empty, disjoint ranges covering every row in order.
        """
        count = max(1, min(workers, height))
        base, extra = divmod(height, count)
        bands: List[range] = []
        start = 0
        for i in range(count):
            stop = start + base + (1 if i < extra else 0)
            bands.append(range(start, stop))
            start = stop
        return bands

    def process(
        self,
        buffer: PixelBuffer,
        cell_size: float,
        mode: str = "hex",
        orientation: str = "pointy",
    ) -> PixelBuffer:
        """Pixelise a buffer onto the requested grid.

        Args:
            buffer: Source pixels. Not modified.
            cell_size: Hex circumradius or square side in pixels.
            mode: 'hex' or 'square'.
            orientation: 'pointy' or 'flat'.

        Returns:
            A new buffer with the same dimensions as the input.

        Raises:
            InvalidParameterError: For a bad cell size, mode, orientation,
                worker count or image size. Raised before any pixel is read.
        """
        params = GridParameters(cell_size, mode, orientation)
        if buffer.width <= 0 or buffer.height <= 0:
            raise InvalidParameterError(
                f"Image dimensions must be positive, got {buffer.width} x {buffer.height}")
        self.check_workers(self._workers)

        bands = self.row_bands(buffer.height, self._workers)

        # Pass 1: aggregate each band independently, then reduce
        partials = self._map(lambda band: Aggregator(self._geometry).run(buffer, params, band), bands)
        total = CellAccumulator()
        for partial in partials:
            total.merge(partial)
        averages = total.finalize()

        # Pass 2: paint disjoint bands of a shared output buffer
        output = PixelBuffer(buffer.width, buffer.height)
        renderer = Renderer(self._geometry)
        self._map(lambda band: renderer.run(buffer, params, averages, band, output), bands)

        expected = buffer.width * buffer.height / self._geometry.cell_area(params)
        self.last_stats = PipelineStats(cells=len(averages), expected_cells=expected, bands=len(bands))
        return output

    def _map(self, fn, bands: List[range]) -> list:
        if len(bands) == 1:
            return [fn(bands[0])]
        with ThreadPoolExecutor(max_workers=len(bands)) as pool:
            return list(pool.map(fn, bands))


# ---------------------------------------------------------------------------
# ImageCodec
# ---------------------------------------------------------------------------
class ImageCodec:
    """Pillow-backed conversion between image files and PixelBuffers."""

    # Formats Pillow writes without an alpha channel.
    _OPAQUE_FORMATS = frozenset({"JPEG", "PPM", "PCX", "EPS"})

    @staticmethod
    def _umask() -> int:
        umask = os.umask(0)
        os.umask(umask)
        return umask

    def decode(self, path: str) -> PixelBuffer:
        """Read an image file into an RGBA PixelBuffer.

        Args:
            path: Input image path.

        Returns:
            The decoded pixels.

        Raises:
            DecodeError: If the file is missing, unreadable or not an image.
        """
        try:
            with Image.open(path) as img:
                rgba = img.convert("RGBA")
        except (OSError, Image.DecompressionBombError) as e:
            raise DecodeError(f"Cannot read input image '{path}': {e}") from e
        return PixelBuffer(rgba.width, rgba.height, np.array(rgba))

    def format_for(self, path: str) -> str:
        """Return the Pillow format name implied by a path's extension.

        Raises:
            UnsupportedFormatError: If the extension is unknown or Pillow
                cannot write that format.
        """
        ext = os.path.splitext(path)[1].lower()
        fmt = Image.registered_extensions().get(ext)
        if fmt is None or fmt not in Image.SAVE:
            raise UnsupportedFormatError(
                f"Unsupported output format '{ext or path}'")
        return fmt

    def encode(self, buffer: PixelBuffer, path: str) -> None:
        """Encode a buffer and write it to path.

        The image is encoded in memory and written to a temporary file in the
        destination directory, which then replaces the destination. A failed
        encode or write leaves no new file and any existing file untouched.

        Args:
            buffer: Pixels to write.
            path: Output image path. Its extension selects the format.

        Raises:
            UnsupportedFormatError: If the format cannot be written.
            EncodeError: If Pillow fails to encode the image.
            OutputWriteError: If the destination cannot be written.
        """
        fmt = self.format_for(path)
        img = Image.fromarray(buffer.array)
        if fmt in self._OPAQUE_FORMATS:
            img = img.convert("RGB")

        stream = io.BytesIO()
        try:
            img.save(stream, format=fmt)
        except (OSError, ValueError, KeyError) as e:
            raise EncodeError(f"Cannot encode image as {fmt}: {e}") from e

        # Write beside the destination, then swap it in; an existing file is
        # only replaced once the new one is complete.
        directory = os.path.dirname(os.path.abspath(path))
        try:
            fd, tmp_path = tempfile.mkstemp(prefix=".hexpxl-", suffix=".tmp", dir=directory)
        except OSError as e:
            raise OutputWriteError(f"Cannot write output file '{path}': {e}") from e
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(stream.getvalue())
            os.chmod(tmp_path, 0o666 & ~self._umask())
            os.replace(tmp_path, path)
        except OSError as e:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise OutputWriteError(f"Cannot write output file '{path}': {e}") from e


# ---------------------------------------------------------------------------
# SettingsManager
# ---------------------------------------------------------------------------
class SettingsManager:
    """JSON import/export of parameter sets with CLI-precedence logic.

    JSON overrides argparse defaults; explicitly given CLI args override JSON.
    """

    # Keys that are persisted to JSON.
    _PERSISTED_KEYS: List[str] = ["size", "mode", "orientation", "workers", "debug"]

    def export_settings(self, params: argparse.Namespace, path: str) -> None:
        """Export current parameters to a JSON file.

        Args:
            params: The resolved argparse Namespace.
            path: Output JSON file path.

        Raises:
            OSError: If the file cannot be written.
        """
        data: Dict = {key: getattr(params, key, None) for key in self._PERSISTED_KEYS}
        with open(path, "w") as f:
            json.dump(data, f, indent=2)

    def import_settings(self, path: str) -> Dict:
        """Import settings from a JSON file.

        Args:
            path: Path to the JSON settings file.

        Returns:
            A dictionary of loaded settings.

        Raises:
            FileNotFoundError: If the file does not exist.
            json.JSONDecodeError: If the file is not valid JSON.
            ValueError: If the JSON document is not an object.
        """
        with open(path, "r") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Settings file must contain a JSON object: '{path}'")
        return data

    def merge_settings(
        self,
        defaults: argparse.Namespace,
        json_settings: Dict,
        explicit_keys: Iterable[str],
    ) -> argparse.Namespace:
        """Merge JSON settings into the parsed args, respecting precedence.

        Args:
            defaults: The argparse Namespace with default/CLI values.
            json_settings: Dictionary loaded from JSON.
            explicit_keys: Parameter names explicitly provided on the CLI.

        Returns:
            The merged Namespace.
        """
        explicit = set(explicit_keys)
        for key in self._PERSISTED_KEYS:
            if key in json_settings and key not in explicit:
                setattr(defaults, key, json_settings[key])
        return defaults


# ---------------------------------------------------------------------------
# Version helper
# ---------------------------------------------------------------------------
def _changelog_version(fallback: str = "0.0.0") -> str:
    """Read the highest version from CHANGELOG.md next to this script.

    Scans for ``## [X.Y.Z]`` headings (skipping ``[Unreleased]``) and returns
    the first match. Returns *fallback* when the file is missing, as it is for
    an installed copy.
    """
    changelog = os.path.join(os.path.dirname(os.path.abspath(__file__)), "CHANGELOG.md")
    try:
        with open(changelog, "r", encoding="utf-8") as fh:
            for line in fh:
                m = re.match(r"^##\s+\[(\d+\.\d+\.\d+)\]", line)
                if m:
                    return m.group(1)
    except OSError:
        pass
    return fallback


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------
class Application:
    """Top-level entry point for the HEX Pixeliser.

    Orchestrates CLI argument parsing, settings loading, decoding, the
    pixelisation pipeline, encoding, and debug reporting. Every failure is
    reported on stderr and mapped to a distinct exit code.
    """

    VERSION:      str = _changelog_version("1.1.0")
    BUILD_DATE:   str = "2026-10-18"
    TITLE:        str = "HEX Pixeliser"
    BANNER_WIDTH: int = 60

    EXIT_SUCCESS:            int = 0
    EXIT_SETTINGS_ERROR:     int = 1
    EXIT_INVALID_PARAMETER:  int = 3
    EXIT_DECODE_ERROR:       int = 4
    EXIT_WRITE_ERROR:        int = 5
    EXIT_UNSUPPORTED_FORMAT: int = 6

    def run(self, argv: Optional[List[str]] = None) -> None:
        """Execute the full application pipeline.

        Args:
            argv: Argument list. Defaults to sys.argv[1:].

        Raises:
            SystemExit: With a non-zero code on any failure.
        """
        # Step 1: Parse CLI arguments and detect explicit keys
        args, explicit_keys = self._parse_args(argv)

        # Step 2: Import settings if requested
        if args.import_settings:
            import_path = self._json_path(args.import_settings)
            manager = SettingsManager()
            try:
                json_data = manager.import_settings(import_path)
            except FileNotFoundError:
                self._fail(f"Settings file not found: '{import_path}'", self.EXIT_SETTINGS_ERROR)
            except json.JSONDecodeError as e:
                self._fail(f"Malformed JSON in settings file: {e}", self.EXIT_SETTINGS_ERROR)
            except (OSError, ValueError) as e:
                self._fail(str(e), self.EXIT_SETTINGS_ERROR)
            args = manager.merge_settings(args, json_data, explicit_keys)

        codec = ImageCodec()
        pipeline = Pipeline(workers=args.workers)

        # Step 3: Validate parameters and output format before touching pixels
        try:
            GridParameters(args.size, args.mode, args.orientation)
            Pipeline.check_workers(args.workers)
            codec.format_for(args.destination)
        except InvalidParameterError as e:
            self._fail(str(e), self.EXIT_INVALID_PARAMETER)
        except UnsupportedFormatError as e:
            self._fail(str(e), self.EXIT_UNSUPPORTED_FORMAT)

        # Step 4: Export settings once they are known to be valid
        export_path = None
        if args.export_settings:
            export_path = self._json_path(args.export_settings)
            try:
                SettingsManager().export_settings(args, export_path)
            except OSError as e:
                self._fail(f"Cannot write settings file: {e}", self.EXIT_SETTINGS_ERROR)

        # Step 5: Decode, pixelise, encode
        try:
            source = codec.decode(args.source)
            result = pipeline.process(source, args.size, args.mode, args.orientation)
            codec.encode(result, args.destination)
        except InvalidParameterError as e:
            self._fail(str(e), self.EXIT_INVALID_PARAMETER)
        except DecodeError as e:
            self._fail(str(e), self.EXIT_DECODE_ERROR)
        except EncodeError as e:
            self._fail(str(e), self.EXIT_UNSUPPORTED_FORMAT)
        except OutputWriteError as e:
            self._fail(str(e), self.EXIT_WRITE_ERROR)

        file_size = os.path.getsize(args.destination)

        # Banner and save confirmation (always shown)
        self._print_banner()
        print(f"  Saved: {args.destination} ({self._format_file_size(file_size)})")
        if export_path:
            print(f"  Saved: {export_path} ({self._format_file_size(os.path.getsize(export_path))})")

        # Step 6: Debug output
        if args.debug:
            self._print_debug(args, source, pipeline.last_stats)
        print()

    def _fail(self, message: str, code: int) -> None:
        """Report an error on stderr and exit with the given code."""
        print(f"Error: {message}", file=sys.stderr)
        sys.exit(code)

    @staticmethod
    def _json_path(path: str) -> str:
        if not path.lower().endswith(".json"):
            path += ".json"
        return path

    def _parse_args(self, argv: Optional[List[str]] = None) -> Tuple[argparse.Namespace, set]:
        """Parse CLI arguments and detect which were explicitly provided.

        Returns:
            A tuple of (parsed Namespace, set of explicitly-provided key names).
        """
        args = self._build_parser().parse_args(argv)

        # Second parse with SUPPRESS defaults to detect explicit keys
        explicit_args = self._build_parser(suppress_defaults=True).parse_args(argv)
        explicit_keys = set(vars(explicit_args).keys())

        return args, explicit_keys

    def _build_parser(self, suppress_defaults: bool = False) -> argparse.ArgumentParser:
        """Build the argparse ArgumentParser.

        Args:
            suppress_defaults: If True, set all defaults to SUPPRESS to
                detect explicitly-provided CLI args.

        Returns:
            A configured ArgumentParser.
        """
        d = argparse.SUPPRESS if suppress_defaults else None

        banner = self._banner_text()

        class _BannerParser(argparse.ArgumentParser):
            """ArgumentParser that prints the banner before help text."""

            def print_help(self, file=None):
                if file is None:
                    file = sys.stdout
                file.write(banner + "\n\n")
                super().print_help(file)

        parser = _BannerParser(
            prog="hexpxl",
            description="HEX Pixeliser: re-tile an image onto a hexagonal or square grid.",
        )

        parser.add_argument("source", type=str,
                            help="Input image path")
        parser.add_argument("destination", type=str,
                            help="Output image path; the extension selects the format")
        parser.add_argument("size", type=int, nargs="?", default=d if d else 20,
                            help="Cell size in pixels: hexagon circumradius or square side (default: 20)")
        parser.add_argument("-m", "--mode", choices=MODES, default=d if d else "hex",
                            help="Pixelisation mode (default: hex)")
        parser.add_argument("--orientation", choices=ORIENTATIONS, default=d if d else "pointy",
                            help="Hexagon orientation (default: pointy)")
        parser.add_argument("--workers", type=int, default=d if d else 1,
                            help="Threads used for each pass (default: 1)")
        parser.add_argument("--debug", nargs="?", const=True, default=d if d else False,
                            type=self._parse_bool_flag,
                            help="Enable debug output")
        parser.add_argument("--export_settings", type=str, default=None,
                            help="Export parameters to a JSON file")
        parser.add_argument("--import_settings", type=str, default=None,
                            help="Import parameters from a JSON file")
        parser.add_argument("--version", action="version",
                            version=f"{self.TITLE} {self.VERSION}")

        return parser

    def _parse_bool_flag(self, value: str) -> bool:
        """Parse a boolean flag value ('true'/'false' or bare flag)."""
        if isinstance(value, bool):
            return value
        if value.lower() in ("true", "1", "yes"):
            return True
        if value.lower() in ("false", "0", "no"):
            return False
        raise argparse.ArgumentTypeError(f"Boolean value expected, got '{value}'")

    def _banner_text(self) -> str:
        """Build the application banner as a string."""
        w = self.BANNER_WIDTH
        inner = w - 2  # space between │ and │
        lines = [
            "┌" + "─" * inner + "┐",
            f"│{'  Program:    ' + self.TITLE:<{inner}}│",
            f"│{'  Version:    ' + self.VERSION:<{inner}}│",
            f"│{'  Build Date: ' + self.BUILD_DATE:<{inner}}│",
            "└" + "─" * inner + "┘",
        ]
        return "\n".join(lines)

    def _print_banner(self) -> None:
        """Print the application banner to stdout."""
        print(self._banner_text())

    def _print_debug(
        self,
        args: argparse.Namespace,
        source: PixelBuffer,
        stats: Optional[PipelineStats],
    ) -> None:
        """Print debug information to stdout.

        Args:
            args: The resolved parameters.
            source: The decoded input buffer.
            stats: Figures from the pipeline run.
        """
        print(f"\n  Source:           {args.source}")
        print(f"  Image size:       {source.width} x {source.height}")
        print(f"  Cell size:        {args.size}")
        print(f"  Mode:             {args.mode}")
        if args.mode == "hex":
            print(f"  Orientation:      {args.orientation}")
        print(f"  Workers:          {args.workers}")
        if stats is not None:
            print(f"  Row bands:        {stats.bands}")
            print(f"  Cells populated:  {stats.cells}")
            print(f"  Cells expected:   {stats.expected_cells:.1f}")

    def _format_file_size(self, size_bytes: int) -> str:
        """Format a file size in human-readable form (e.g. '1.23 MB')."""
        if size_bytes < 1024:
            return f"{size_bytes} B"
        elif size_bytes < 1024 * 1024:
            return f"{size_bytes / 1024:.2f} KB"
        else:
            return f"{size_bytes / (1024 * 1024):.2f} MB"


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
def main() -> None:
    """Main entry point for the HEX Pixeliser."""
    if sys.stdout and hasattr(sys.stdout, "reconfigure"):
        sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    app = Application()
    app.run()


if __name__ == "__main__":
    main()
