import numpy as np
import pytest
from PIL import Image

from interpreter import MODE_DEBUG, MODE_SCRIPT, TYPE_ERROR, Interpreter, Value


def make(mode=MODE_SCRIPT):
    out = []
    interp = Interpreter(mode=mode, output_sink=out.append)
    return interp, out


def run_on(arr, src, mode=MODE_SCRIPT):
    interp, out = make(mode)
    interp.push(Value("image", arr))
    interp.evaluate_program(src)
    return interp, "".join(out)


def result(arr, src):
    interp, _ = run_on(arr, src)
    assert len(interp.stack) == 1
    value = interp.stack[0]
    assert value.type == "image", value
    return value.value


def gradient():
    return np.arange(6, dtype=np.uint8).reshape(2, 3)


# Type integration

def test_image_type_and_text():
    interp, out = run_on(np.zeros((2, 2, 3), np.uint8), "copy type swap println")
    assert interp.stack == [Value("string", "image")]
    assert out == "{Image}\n"


def test_debug_trace_shows_placeholder():
    _, out = run_on(np.zeros((1, 1), np.uint8), "1", mode=MODE_DEBUG)
    assert "Stack〔 {Image} 〕 ←  1\n" in out


def test_image_coercions():
    interp, _ = run_on(np.zeros((1, 1), np.uint8), "copy (number) cast swap (bool) cast")
    assert interp.stack[0] == Value("number", 1.0)
    assert interp.stack[1] == Value("bool", True)


def test_non_image_operand_is_an_error():
    interp, _ = run_on(np.zeros((1, 1), np.uint8), "pop 1 invert-color")
    assert interp.stack == [Value(TYPE_ERROR, "invert-color")]


# Pixel operations

def test_invert_color():
    out = result(np.zeros((2, 2, 3), np.uint8), "invert-color")
    assert (out == 255).all()


def test_input_image_is_not_modified():
    arr = np.zeros((2, 2, 3), np.uint8)
    result(arr, "invert-color")
    assert (arr == 0).all()


def test_to_grayscale_drops_channels():
    arr = np.zeros((3, 4, 3), np.uint8)
    arr[..., 0] = 255
    out = result(arr, "to-grayscale")
    assert out.shape == (3, 4)
    assert (out == 76).all()


def test_flip_vertical_and_horizontal():
    arr = gradient()
    assert (result(arr, "(vertical) flip-image") == arr[::-1]).all()
    assert (result(arr, "(horizontal) flip-image") == arr[:, ::-1]).all()


def test_unknown_flip_direction_leaves_image():
    interp, _ = run_on(gradient(), "(diagonal) flip-image")
    assert interp.stack[0].type == "image"
    assert interp.stack[1] == Value(TYPE_ERROR, "flip-image")


def test_resize_image():
    out = result(np.zeros((4, 4, 3), np.uint8), "8 2 resize-image")
    assert out.shape == (2, 8, 3)


def test_resize_nearest_picks_source_pixels():
    out = result(np.array([[0, 255]], np.uint8), "4 1 resize-image")
    assert out.tolist() == [[0, 0, 255, 255]]


def test_resize_to_zero_is_an_error():
    interp, _ = run_on(gradient(), "0 2 resize-image")
    assert interp.stack == [Value(TYPE_ERROR, "resize-image")]


def test_gaussian_blur_keeps_flat_image():
    arr = np.full((5, 5, 3), 100, np.uint8)
    out = result(arr, "3 gaussian-blur")
    assert (out == 100).all()


def test_gaussian_blur_rejects_even_kernel():
    interp, _ = run_on(np.zeros((3, 3), np.uint8), "4 gaussian-blur")
    assert interp.stack == [Value(TYPE_ERROR, "gaussian-blur")]


def test_sharpen_keeps_flat_image():
    out = result(np.full((4, 4), 50, np.uint8), "9 to-sharpe")
    assert (out == 50).all()


def test_edge_detect_flat_image_has_no_edges():
    out = result(np.full((6, 6, 3), 80, np.uint8), "edge-detect")
    assert out.shape == (6, 6)
    assert (out == 0).all()


def test_edge_detect_finds_a_step():
    arr = np.zeros((8, 8), np.uint8)
    arr[:, 4:] = 255
    out = result(arr, "edge-detect")
    assert out[:, 3:5].any()
    assert not out[:, :2].any()


def test_color_map_produces_rgb():
    out = result(np.zeros((2, 3), np.uint8), "color-map")
    assert out.shape == (2, 3, 3)
    # Jet maps black to dark blue.
    assert out[0, 0, 0] == 0
    assert out[0, 0, 2] > 0


def test_histogram_equalization_spreads_levels():
    arr = np.array([[10, 20], [20, 30]], np.uint8)
    out = result(arr, "histogram-equalization")
    assert out.min() == 0
    assert out.max() == 255


# Morphology

def single_dot():
    arr = np.zeros((5, 5), np.uint8)
    arr[2, 2] = 255
    return arr


def test_dilate_grows_a_dot():
    out = result(single_dot(), "(dilate) 3 morphology-operation")
    assert int(out.sum()) == 9 * 255
    assert (out[1:4, 1:4] == 255).all()


def test_erode_removes_a_dot():
    out = result(single_dot(), "(erode) 3 morphology-operation")
    assert not out.any()


def test_erode_wears_away_the_border():
    out = result(np.full((4, 4), 255, np.uint8), "(erode) 3 morphology-operation")
    assert (out[1:3, 1:3] == 255).all()
    assert not out[0].any()
    assert not out[:, 0].any()


def test_close_restores_a_dot():
    out = result(single_dot(), "(close) 3 morphology-operation")
    assert (out == single_dot()).all()


def test_unknown_morphology_operation_leaves_image():
    interp, _ = run_on(single_dot(), "(melt) 3 morphology-operation")
    assert interp.stack[0].type == "image"
    assert interp.stack[1] == Value(TYPE_ERROR, "morphology-operation")


# Files

def test_save_and_open_roundtrip(tmp_path):
    arr = np.zeros((3, 2, 3), np.uint8)
    arr[0, 0] = (255, 0, 0)
    path = tmp_path / "pic.png"
    interp, _ = run_on(arr, f"({path}) save-image")
    assert interp.stack == []
    assert np.array_equal(np.asarray(Image.open(path).convert("RGB")), arr)

    out = result(arr, f"pop ({path}) open-image")
    assert np.array_equal(out, arr)


def test_open_missing_image(tmp_path):
    interp, _ = make()
    interp.evaluate_program(f"({tmp_path / 'nope.png'}) open-image")
    assert interp.stack == [Value(TYPE_ERROR, "open-image")]


def test_show_image_uses_pillow_viewer(monkeypatch):
    shown = []
    monkeypatch.setattr(Image.Image, "show", lambda self, title=None: shown.append((self.size, title)))
    interp, _ = run_on(np.zeros((2, 3, 3), np.uint8), "show-image")
    assert interp.stack == []
    assert shown == [((3, 2), "Image Window")]


@pytest.mark.parametrize("command", ["to-grayscale", "edge-detect", "color-map", "histogram-equalization"])
def test_commands_accept_gray_and_rgb(command):
    for arr in (np.zeros((3, 3), np.uint8), np.zeros((3, 3, 3), np.uint8)):
        out = result(arr, command)
        assert out.dtype == np.uint8
