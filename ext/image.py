"""Stack extension: image processing on numpy arrays.

Images travel through the interpreter as opaque ``image`` values whose
payload is a ``uint8`` numpy array, either ``[height][width][3]`` (RGB) or
``[height][width]`` (gray). The interpreter never looks inside them; it only
knows the type name and the ``{Image}`` placeholder text.

File decoding/encoding and the viewer go through Pillow. The filters are
implemented directly with numpy and follow OpenCV conventions: reflect-101
borders for convolutions, zero constant borders for morphology,
nearest-neighbour resizing and Canny edge detection with hysteresis
thresholds 100/200.

Every command pops its operands and pushes either a new image or an error
tagged with the command name; input images are never modified in place.
"""

from __future__ import annotations

import math
from typing import Any, Callable, Dict, Optional

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view
from PIL import Image

from extensions import ExtensionAPI


STACK_EXTENSION_NAME = "image"
STACK_EXTENSION_API_VERSION = 1

TYPE_IMAGE = "image"
IMAGE_PLACEHOLDER = "{Image}"
WINDOW_TITLE = "Image Window"

FLIP_DIRECTIONS = {
    "vertical": 0,
    "horizontal": 1,
}

CANNY_LOW = 100.0
CANNY_HIGH = 200.0

SOBEL_X = np.array([[-1, 0, 1], [-2, 0, 2], [-1, 0, 1]], dtype=np.float64)
SOBEL_Y = SOBEL_X.T


def _fail(interpreter: Any, rule: str, message: str):
    from interpreter import TYPE_ERROR, Value

    interpreter.log_print(f"Error! {message}\n")
    return Value(TYPE_ERROR, rule)


def _expect_image(value: Any) -> Optional[np.ndarray]:
    if getattr(value, "type", None) != TYPE_IMAGE or not isinstance(value.value, np.ndarray):
        return None
    return value.value


def _make_image(arr: np.ndarray):
    from interpreter import Value

    return Value(TYPE_IMAGE, np.ascontiguousarray(arr, dtype=np.uint8))


def _saturate(arr: np.ndarray) -> np.ndarray:
    return np.clip(np.rint(arr), 0, 255).astype(np.uint8)


def _number(value: Any) -> float:
    from interpreter import to_number

    return to_number(value)


def _int_param(value: Any) -> int:
    number = _number(value)
    if not math.isfinite(number):
        return 0
    return int(number)


# ---- array kernels ----

def _gray(arr: np.ndarray) -> np.ndarray:
    if arr.ndim == 2:
        return arr
    rgb = arr[..., :3].astype(np.float64)
    return _saturate(rgb @ np.array([0.299, 0.587, 0.114]))


def _correlate(arr: np.ndarray, kernel: np.ndarray) -> np.ndarray:
    """Correlate every channel with ``kernel`` using reflect-101 borders."""
    kh, kw = kernel.shape
    h, w = arr.shape[:2]
    top, left = kh // 2, kw // 2
    pad = [(top, kh - 1 - top), (left, kw - 1 - left)] + [(0, 0)] * (arr.ndim - 2)
    padded = np.pad(arr.astype(np.float64), pad, mode="reflect")
    out = np.zeros(arr.shape, dtype=np.float64)
    for dy in range(kh):
        for dx in range(kw):
            weight = kernel[dy, dx]
            if weight:
                out += weight * padded[dy:dy + h, dx:dx + w]
    return out


def _gaussian_kernel(ksize: int) -> np.ndarray:
    sigma = 0.3 * ((ksize - 1) * 0.5 - 1) + 0.8
    offsets = np.arange(ksize, dtype=np.float64) - (ksize - 1) / 2.0
    line = np.exp(-(offsets ** 2) / (2.0 * sigma * sigma))
    line /= line.sum()
    return np.outer(line, line)


def _morph(arr: np.ndarray, size: int, reducer: Callable[..., np.ndarray], fill: int) -> np.ndarray:
    before = size // 2
    after = size - 1 - before
    pad = [(before, after), (before, after)] + [(0, 0)] * (arr.ndim - 2)
    padded = np.pad(arr, pad, mode="constant", constant_values=fill)
    windows = sliding_window_view(padded, (size, size), axis=(0, 1))
    return reducer(windows, axis=(-2, -1))


def _dilate(arr: np.ndarray, size: int) -> np.ndarray:
    return _morph(arr, size, np.max, 0)


def _erode(arr: np.ndarray, size: int) -> np.ndarray:
    return _morph(arr, size, np.min, 0)


MORPHOLOGY_OPERATIONS: Dict[str, Callable[[np.ndarray, int], np.ndarray]] = {
    "dilate": _dilate,
    "erode": _erode,
    "open": lambda arr, size: _dilate(_erode(arr, size), size),
    "close": lambda arr, size: _erode(_dilate(arr, size), size),
}


def _grow(mask: np.ndarray) -> np.ndarray:
    h, w = mask.shape
    padded = np.pad(mask, 1, mode="constant", constant_values=False)
    out = np.zeros_like(mask)
    for dy in range(3):
        for dx in range(3):
            out |= padded[dy:dy + h, dx:dx + w]
    return out


def _canny(gray: np.ndarray, low: float, high: float) -> np.ndarray:
    gx = _correlate(gray, SOBEL_X)
    gy = _correlate(gray, SOBEL_Y)
    magnitude = np.abs(gx) + np.abs(gy)
    angle = np.degrees(np.arctan2(gy, gx)) % 180.0

    h, w = magnitude.shape
    padded = np.pad(magnitude, 1, mode="constant")

    def neighbour(dy: int, dx: int) -> np.ndarray:
        return padded[1 + dy:1 + dy + h, 1 + dx:1 + dx + w]

    sectors = [
        ((angle < 22.5) | (angle >= 157.5), (0, 1)),
        ((angle >= 22.5) & (angle < 67.5), (1, 1)),
        ((angle >= 67.5) & (angle < 112.5), (1, 0)),
        ((angle >= 112.5) & (angle < 157.5), (1, -1)),
    ]
    keep = np.zeros(magnitude.shape, dtype=bool)
    for sector, (dy, dx) in sectors:
        keep |= sector & (magnitude > neighbour(dy, dx)) & (magnitude >= neighbour(-dy, -dx))
    thin = np.where(keep, magnitude, 0.0)

    weak = thin > low
    edges = thin > high
    # Hysteresis: weak pixels survive only when connected to a strong one.
    while True:
        grown = _grow(edges) & weak
        if np.array_equal(grown, edges):
            break
        edges = grown
    return np.where(edges, 255, 0).astype(np.uint8)


def _jet(gray: np.ndarray) -> np.ndarray:
    level = gray.astype(np.float64) / 255.0
    channels = [np.clip(1.5 - np.abs(4.0 * level - centre), 0.0, 1.0) for centre in (3.0, 2.0, 1.0)]
    return _saturate(np.stack(channels, axis=-1) * 255.0)


def _equalize(gray: np.ndarray) -> np.ndarray:
    hist = np.bincount(gray.ravel(), minlength=256)
    cdf = hist.cumsum()
    total = int(gray.size)
    if total == 0:
        return gray.copy()
    cdf_min = int(cdf[cdf > 0][0])
    if total == cdf_min:
        return gray.copy()
    lut = _saturate((cdf - cdf_min) * 255.0 / (total - cdf_min))
    return lut[gray]


def _resize_nearest(arr: np.ndarray, width: int, height: int) -> np.ndarray:
    src_h, src_w = arr.shape[:2]
    rows = np.minimum((np.arange(height) * src_h) // height, src_h - 1)
    cols = np.minimum((np.arange(width) * src_w) // width, src_w - 1)
    return arr[rows][:, cols]


# ---- operators ----

def _op_open_image(interpreter, args):
    path = interpreter.to_text(args[0])
    try:
        with Image.open(path) as im:
            arr = np.asarray(im.convert("RGB"))
    except (OSError, ValueError) as exc:
        return _fail(interpreter, "open-image", f"failed to open image '{path}': {exc}")
    return _make_image(arr)


def _op_show_image(interpreter, args):
    arr = _expect_image(args[0])
    if arr is None:
        return _fail(interpreter, "show-image", "show-image expects an image")
    Image.fromarray(arr).show(title=WINDOW_TITLE)
    return None


def _op_save_image(interpreter, args):
    arr = _expect_image(args[0])
    name = interpreter.to_text(args[1])
    if arr is None:
        return _fail(interpreter, "save-image", "save-image expects an image")
    try:
        Image.fromarray(arr).save(name)
    except (OSError, ValueError) as exc:
        return _fail(interpreter, "save-image", f"failed to save image '{name}': {exc}")
    return None


def _op_to_grayscale(interpreter, args):
    arr = _expect_image(args[0])
    if arr is None:
        return _fail(interpreter, "to-grayscale", "to-grayscale expects an image")
    return _make_image(_gray(arr).copy())


def _op_invert_color(interpreter, args):
    arr = _expect_image(args[0])
    if arr is None:
        return _fail(interpreter, "invert-color", "invert-color expects an image")
    return _make_image(255 - arr)


def _op_flip_image(interpreter, args):
    direction = interpreter.to_text(args[0])
    if direction not in FLIP_DIRECTIONS:
        # The image stays on the stack when the direction is unknown.
        return _fail(interpreter, "flip-image", f"unknown flip direction '{direction}'")
    arr = _expect_image(interpreter.pop())
    if arr is None:
        return _fail(interpreter, "flip-image", "flip-image expects an image")
    if FLIP_DIRECTIONS[direction] == 0:
        return _make_image(arr[::-1])
    return _make_image(arr[:, ::-1])


def _op_gaussian_blur(interpreter, args):
    arr = _expect_image(args[0])
    ksize = _int_param(args[1])
    if arr is None:
        return _fail(interpreter, "gaussian-blur", "gaussian-blur expects an image")
    if ksize <= 0 or ksize % 2 == 0:
        return _fail(interpreter, "gaussian-blur", f"kernel size must be a positive odd number, got {ksize}")
    return _make_image(_saturate(_correlate(arr, _gaussian_kernel(ksize))))


def _op_resize_image(interpreter, args):
    arr = _expect_image(args[0])
    width = _int_param(args[1])
    height = _int_param(args[2])
    if arr is None:
        return _fail(interpreter, "resize-image", "resize-image expects an image")
    if width <= 0 or height <= 0 or arr.size == 0:
        return _fail(interpreter, "resize-image", f"invalid target size {width}x{height}")
    return _make_image(_resize_nearest(arr, width, height))


def _op_edge_detect(interpreter, args):
    arr = _expect_image(args[0])
    if arr is None:
        return _fail(interpreter, "edge-detect", "edge-detect expects an image")
    return _make_image(_canny(_gray(arr), CANNY_LOW, CANNY_HIGH))


def _op_color_map(interpreter, args):
    arr = _expect_image(args[0])
    if arr is None:
        return _fail(interpreter, "color-map", "color-map expects an image")
    return _make_image(_jet(_gray(arr)))


def _op_morphology_operation(interpreter, args):
    operation = interpreter.to_text(args[0])
    size = _int_param(args[1])
    morph = MORPHOLOGY_OPERATIONS.get(operation)
    if morph is None:
        # The image stays on the stack when the operation is unknown.
        return _fail(interpreter, "morphology-operation", f"unknown morphology operation '{operation}'")
    arr = _expect_image(interpreter.pop())
    if arr is None:
        return _fail(interpreter, "morphology-operation", "morphology-operation expects an image")
    if size <= 0:
        return _fail(interpreter, "morphology-operation", f"kernel size must be positive, got {size}")
    return _make_image(morph(arr, size))


def _op_histogram_equalization(interpreter, args):
    arr = _expect_image(args[0])
    if arr is None:
        return _fail(interpreter, "histogram-equalization", "histogram-equalization expects an image")
    return _make_image(_equalize(_gray(arr)))


def _op_to_sharpe(interpreter, args):
    arr = _expect_image(args[0])
    level = _number(args[1])
    if arr is None:
        return _fail(interpreter, "to-sharpe", "to-sharpe expects an image")
    kernel = -np.ones((3, 3), dtype=np.float64)
    kernel[1, 1] = level
    with np.errstate(all="ignore"):
        out = _correlate(arr, kernel)
    return _make_image(_saturate(np.nan_to_num(out)))


def stack_register(ext: ExtensionAPI) -> None:
    ext.metadata(name="image", version="0.1.0")
    ext.register_type(TYPE_IMAGE, to_str=lambda ctx, v: IMAGE_PLACEHOLDER)
    ext.register_operator("open-image", 1, _op_open_image, doc="path open-image -> image")
    ext.register_operator("show-image", 1, _op_show_image, doc="image show-image")
    ext.register_operator("save-image", 2, _op_save_image, doc="image path save-image")
    ext.register_operator("to-grayscale", 1, _op_to_grayscale, doc="image to-grayscale -> image")
    ext.register_operator("invert-color", 1, _op_invert_color, doc="image invert-color -> image")
    ext.register_operator("flip-image", 1, _op_flip_image, doc="image (vertical|horizontal) flip-image -> image")
    ext.register_operator("gaussian-blur", 2, _op_gaussian_blur, doc="image ksize gaussian-blur -> image")
    ext.register_operator("resize-image", 3, _op_resize_image, doc="image width height resize-image -> image")
    ext.register_operator("edge-detect", 1, _op_edge_detect, doc="image edge-detect -> image")
    ext.register_operator("color-map", 1, _op_color_map, doc="image color-map -> image (jet)")
    ext.register_operator(
        "morphology-operation",
        2,
        _op_morphology_operation,
        doc="image (dilate|erode|open|close) ksize morphology-operation -> image",
    )
    ext.register_operator("histogram-equalization", 1, _op_histogram_equalization, doc="image histogram-equalization -> image")
    ext.register_operator("to-sharpe", 2, _op_to_sharpe, doc="image level to-sharpe -> image")
