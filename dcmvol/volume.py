"""Rebuild a 3D image volume from the images in a series

The series only references the pixel data in the buffers the files were
decoded from, so the volume is computed from scratch on every request.
"""
from __future__ import annotations
import enum, logging, math
from typing import Any, Dict, List, Sequence, Tuple, TYPE_CHECKING

import numpy as np
from attrs import frozen, field

from .util import DicomDataError

if TYPE_CHECKING:
    from .hierarchy import DicomImage, DicomSeries


log = logging.getLogger(__name__)


class UnknownPixelTypeError(DicomDataError):
    """The BitsAllocated for the pixel data isn't supported"""


class SliceOrder(enum.Enum):
    """Enumerate the ways slices can be ordered in the volume"""

    INSTANCE_NUMBER = enum.auto()
    """Sort the images numerically by their InstanceNumber"""

    INSERTION = enum.auto()
    """Keep the order the images were first seen in, which can vary from run
    to run when files are parsed concurrently
    """


@frozen
class ImageType:
    components: int
    """Number of samples per pixel"""


@frozen
class ImageVolume:
    """Geometry and voxel data for a reconstructed series"""

    image_type: ImageType

    origin: Tuple[float, float, float]
    """Position of the first voxel in patient space"""

    spacing: Tuple[float, float, float]
    """Pixel spacing for rows and columns, followed by the slice thickness"""

    direction: Tuple[float, ...]
    """Row-major 3x3 matrix, columns are the row/column/slice directions"""

    size: Tuple[int, int, int]
    """Rows, columns, and number of slices"""

    data: np.ndarray = field(eq=False, repr=False)
    """All of the slices concatenated into one flat array"""

    def direction_matrix(self) -> np.ndarray:
        return np.array(self.direction).reshape(3, 3)

    def geometry(self) -> Dict[str, Any]:
        """Everything but the voxel data, as plain JSON compatible values"""
        return {
            "image_type": {"components": self.image_type.components},
            "origin": list(self.origin),
            "spacing": list(self.spacing),
            "direction": list(self.direction),
            "size": list(self.size),
            "dtype": str(self.data.dtype),
        }

    def to_array(self) -> np.ndarray:
        """Get the data with shape (slices, rows, columns[, components])"""
        rows, cols, n_slices = self.size
        shape: Tuple[int, ...] = (n_slices, rows, cols)
        if self.image_type.components > 1:
            shape += (self.image_type.components,)
        return self.data.reshape(shape)


def parse_numbers(value: Any) -> List[float]:
    """Parse backslash separated string (or a sequence) into floats"""
    if isinstance(value, str):
        return [float(x) for x in value.split("\\")]
    if isinstance(value, (int, float)):
        return [float(value)]
    return [float(x) for x in value]


def to_float(value: Any) -> float:
    """Convert to a float, returning NaN for anything that can't be"""
    if value is None:
        return math.nan
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan


def pixel_dtype(
    bits_allocated: Any, pixel_representation: Any, little_endian: bool = True
) -> np.dtype:
    """Choose the numpy dtype for the stored pixel values

    Raises
    ------
    UnknownPixelTypeError
        If `bits_allocated` isn't 8, 16, or 32
    """
    try:
        bits = int(bits_allocated)
    except (TypeError, ValueError):
        raise UnknownPixelTypeError(
            f"Unknown pixel bit type ({bits_allocated})"
        ) from None
    if bits not in (8, 16, 32):
        raise UnknownPixelTypeError(f"Unknown pixel bit type ({bits})")
    unsigned = pixel_representation is not None and int(pixel_representation) == 0
    kind = "u" if unsigned else "i"
    order = "<" if little_endian else ">"
    return np.dtype(f"{order}{kind}{bits // 8}")


def direction_matrix(orientation: Sequence[float]) -> Tuple[float, ...]:
    """Build the direction matrix from the row/column direction cosines

    The slice direction is the cross product of the row and column
    directions. Result is a row-major 3x3 matrix where the columns are the
    row, column, and slice directions.
    """
    if len(orientation) != 6:
        raise DicomDataError(
            "Expected 6 direction cosines, got %d" % len(orientation)
        )
    row_dir = np.array(orientation[:3], dtype=float)
    col_dir = np.array(orientation[3:], dtype=float)
    slice_dir = np.cross(row_dir, col_dir)
    mat = np.column_stack((row_dir, col_dir, slice_dir))
    return tuple(float(x) for x in mat.ravel())


def rescale(
    data: np.ndarray, slope: Any, intercept: Any, output_dtype: Any = None
) -> np.ndarray:
    """Apply the rescale slope/intercept to the stored values

    A slope of 1 and an intercept of 0 are treated as missing, as are values
    that can't be converted to finite numbers. If `output_dtype` is None
    the result keeps the stored dtype, so values that can't be represented
    get truncated and wrapped.
    """
    b = to_float(intercept)
    m = to_float(slope)
    has_intercept = math.isfinite(b) and b != 0
    has_slope = math.isfinite(m) and m != 1
    if not (has_intercept or has_slope):
        if output_dtype is None:
            return data
        return data.astype(output_dtype)
    res = data.astype(np.float64)
    if has_slope:
        res *= m
    if has_intercept:
        res += b
    if output_dtype is not None:
        return res.astype(output_dtype)
    if data.dtype.kind in "iu":
        return np.trunc(res).astype(np.int64).astype(data.dtype)
    return res.astype(data.dtype)


def _instance_sort_key(image: DicomImage) -> Tuple[int, float, str]:
    try:
        return (0, float(image.key), "")
    except ValueError:
        return (1, 0.0, image.key)


def order_images(series: DicomSeries, slice_order: SliceOrder) -> List[DicomImage]:
    """Get the images from the series in the requested order"""
    images = list(series.images.values())
    if slice_order == SliceOrder.INSTANCE_NUMBER:
        images.sort(key=_instance_sort_key)
    return images


def _require(image: DicomImage, name: str) -> Any:
    val = image.meta_data.get(name)
    if val is None:
        raise DicomDataError(f"Image {image.key} is missing {name}")
    return val


def _vector(image: DicomImage, name: str, n_vals: int) -> List[float]:
    try:
        vals = parse_numbers(_require(image, name))
    except (TypeError, ValueError) as e:
        raise DicomDataError(f"Unable to parse {name}: {e}")
    if len(vals) != n_vals:
        raise DicomDataError(
            f"Expected {n_vals} values for {name}, got {len(vals)}"
        )
    return vals


def _slice_data(image: DicomImage, n_elems: int, bits: Any, pix_rep: Any) -> np.ndarray:
    pix = image.pixel_range
    if pix is None:
        raise DicomDataError(f"Image {image.key} has no pixel data")
    dtype = pixel_dtype(bits, pix_rep, pix.little_endian)
    n_bytes = n_elems * dtype.itemsize
    if pix.length < n_bytes:
        raise DicomDataError(
            f"Pixel data for image {image.key} has {pix.length} bytes, "
            f"expected {n_bytes}"
        )
    # Anything past the expected size is padding to an even length
    return np.frombuffer(pix.buffer, dtype=dtype, count=n_elems, offset=pix.offset)


def reconstruct_volume(
    series: DicomSeries,
    slice_order: SliceOrder = SliceOrder.INSTANCE_NUMBER,
    output_dtype: Any = None,
) -> ImageVolume:
    """Build an ImageVolume from the images in a series

    The geometry, pixel type, and rescale parameters come from the first
    image.

    Parameters
    ----------
    series
        The (fully populated) series to build the volume from

    slice_order
        How to order the slices in the volume

    output_dtype
        Compute rescaled values in this dtype, instead of the stored type

    Raises
    ------
    UnknownPixelTypeError
        The BitsAllocated isn't 8, 16, or 32
    """
    if series.n_reconstructed > 0:
        log.warning(
            "The volume for series %s was requested more than once. Since "
            "the series doesn't store the image data (to save memory while "
            "keeping access to its meta data), the volume is recomputed each "
            "time. Cache the resulting volume if you need to access it again.",
            series.key,
        )
    images = order_images(series, slice_order)
    if not images:
        raise DicomDataError(f"Series {series.key} has no images")
    first = images[0]
    meta = first.meta_data

    origin = _vector(first, "ImagePositionPatient", 3)
    spacing = _vector(first, "PixelSpacing", 2)
    thickness = to_float(meta.get("SliceThickness"))
    if math.isnan(thickness):
        log.warning("No usable SliceThickness for series %s", series.key)
    spacing.append(thickness)
    size = (int(_require(first, "Rows")), int(_require(first, "Columns")), len(images))
    direction = direction_matrix(_vector(first, "ImageOrientationPatient", 6))
    image_type = ImageType(int(meta.get("SamplesPerPixel", 1)))

    bits = meta.get("BitsAllocated")
    pix_rep = meta.get("PixelRepresentation")
    # Fail on unknown bit depths before touching any pixel data
    dtype = pixel_dtype(bits, pix_rep).newbyteorder("=")
    slice_elems = size[0] * size[1] * image_type.components
    slices = [_slice_data(image, slice_elems, bits, pix_rep) for image in images]
    data = np.concatenate(slices).astype(dtype, copy=False)
    data = rescale(
        data, meta.get("RescaleSlope"), meta.get("RescaleIntercept"), output_dtype
    )

    series.mark_reconstructed()
    return ImageVolume(
        image_type,
        (origin[0], origin[1], origin[2]),
        (spacing[0], spacing[1], spacing[2]),
        direction,
        size,
        data,
    )
