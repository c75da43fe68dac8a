import errno
import uuid

import pytest

from genkd import log, util
from genkd.model import Extent, Image, ImageError


@pytest.fixture(autouse=True)
def _reset_level():
    log.set_loglevel(None)
    yield
    log.set_loglevel(None)


@pytest.mark.parametrize("text,value", [
    ("1k", 1024), ("1K", 1024), ("1s", 512), ("4096", 4096), ("", 0),
])
def test_parse_size_values(text, value):
    assert util.parse_size(text) == value


def test_parse_size_bases_agree():
    assert util.parse_size("0x10") == util.parse_size("16") == util.parse_size("020")


def test_parse_size_suffix_chain():
    assert util.parse_size("1G") == util.parse_size("1024M") == util.parse_size("1048576K")


@pytest.mark.parametrize("text", ["10X", "5%", "0x", "08"])
def test_parse_size_invalid(text):
    with pytest.raises(ValueError):
        util.parse_size(text)


def test_parse_size_or_percent():
    assert util.parse_size_or_percent("50%") == (50, True)
    assert util.parse_size_or_percent("2K") == (2048, False)


def test_uuid_validate():
    assert util.uuid_validate("0fc63daf-8483-4772-8e79-3d69d8477de4")
    assert not util.uuid_validate("0fc63daf-8483-4772-8e79-3d69d8477de")
    assert not util.uuid_validate("0fc63daf+8483-4772-8e79-3d69d8477de4")
    assert not util.uuid_validate("0fc63dag-8483-4772-8e79-3d69d8477de4")


def test_uuid_parse_mixed_endian():
    text = "00112233-4455-6677-8899-aabbccddeeff"
    assert util.uuid_parse(text) == bytes.fromhex("33221100554477668899aabbccddeeff")
    assert util.uuid_parse(text) == uuid.UUID(text).bytes_le


def test_uuid_random_is_version_4():
    value = util.uuid_random()
    assert util.uuid_validate(value)
    assert value[14] == "4"
    assert value[19] in "89ab"
    assert util.uuid_random() != value


def test_prepare_image_sets_size_and_clears(tmp_path):
    path = tmp_path / "out.img"
    path.write_bytes(b"old content")
    util.prepare_image(Image(file=str(path)), 4096)
    assert path.read_bytes() == b"\0" * 4096


def test_insert_data_at_offset(tmp_path):
    path = tmp_path / "out.img"
    image = Image(file=str(path))
    util.prepare_image(image, 16)
    util.insert_data(image, b"xyz", str(path), 4)
    util.insert_data(image, "ab", str(path), 0)
    data = path.read_bytes()
    assert data[:2] == b"ab"
    assert data[4:7] == b"xyz"
    assert len(data) == 16


def test_insert_image_copies_and_fills(tmp_path):
    out = tmp_path / "out.img"
    sub_path = tmp_path / "sub.bin"
    sub_path.write_bytes(b"abc")
    image = Image(file=str(out))
    util.prepare_image(image, 0)
    util.insert_image(image, Image(file=str(sub_path)), 8, 4, 0xFF)
    data = out.read_bytes()
    assert data[:4] == b"\0" * 4
    assert data[4:7] == b"abc"
    assert data[7:12] == b"\xff" * 5
    assert len(data) == 12


def test_insert_image_truncates_large_input(tmp_path):
    out = tmp_path / "out.img"
    sub_path = tmp_path / "sub.bin"
    sub_path.write_bytes(b"abcdef")
    image = Image(file=str(out))
    util.prepare_image(image, 0)
    util.insert_image(image, Image(file=str(sub_path)), 3, 0)
    assert out.read_bytes() == b"abc"


def test_insert_image_without_sub_zero_fills(tmp_path):
    out = tmp_path / "out.img"
    image = Image(file=str(out))
    util.prepare_image(image, 0)
    util.insert_image(image, None, 2048, 0)
    assert out.read_bytes() == b"\0" * 2048


def test_insert_image_missing_sub_raises(tmp_path):
    image = Image(file=str(tmp_path / "out.img"))
    util.prepare_image(image, 0)
    with pytest.raises(ImageError) as info:
        util.insert_image(image, Image(file=str(tmp_path / "missing")), 4, 0)
    assert info.value.errno == errno.ENOENT


def test_extend_file(tmp_path):
    out = tmp_path / "out.img"
    image = Image(file=str(out))
    util.prepare_image(image, 512)
    util.extend_file(image, 1024)
    assert out.stat().st_size == 1024
    with pytest.raises(ImageError) as info:
        util.extend_file(image, 512)
    assert info.value.errno == errno.EINVAL


def test_map_file_extents_of_dense_file(tmp_path):
    path = tmp_path / "f.bin"
    path.write_bytes(b"0123456789")
    assert util.map_file_extents(str(path), 10) == [Extent(0, 10)]


def test_is_block_device_false_for_regular_and_missing(tmp_path):
    path = tmp_path / "f"
    path.write_bytes(b"")
    assert util.is_block_device(str(path)) is False
    assert util.is_block_device(str(tmp_path / "missing")) is False


def test_block_device_size_rejects_regular_file(tmp_path):
    path = tmp_path / "f"
    path.write_bytes(b"data")
    with pytest.raises(ImageError) as info:
        util.block_device_size(Image(file="x"), str(path))
    assert info.value.errno == errno.EINVAL


def test_image_dir_size(tmp_path):
    root = tmp_path / "root"
    root.mkdir()
    image = Image(file="x", mountpath=str(root))
    empty_size = util.image_dir_size(image)
    assert empty_size == 4096
    (root / "a").write_bytes(b"1")
    with_file = util.image_dir_size(image)
    assert with_file == empty_size * 2
    (root / "sub").mkdir()
    assert util.image_dir_size(image) == with_file + empty_size


def test_image_dir_size_empty_image(tmp_path):
    assert util.image_dir_size(Image(file="x", mountpath=str(tmp_path), empty=True)) == 0


def test_parse_holes():
    image = Image(file="x")
    holes = util.parse_holes(image, [" ( 1K ; 2K ) ", "(0;512)"])
    assert holes == [Extent(1024, 2048), Extent(0, 512)]
    assert image.holes == holes


def test_parse_holes_keeps_existing():
    image = Image(file="x", holes=[Extent(0, 1)])
    assert util.parse_holes(image, ["(1K;2K)"]) == [Extent(0, 1)]


@pytest.mark.parametrize("spec", ["1K;2K", "(1K;2K", "(1x;2K)", "(1K;2K) junk"])
def test_parse_holes_invalid(spec):
    with pytest.raises(ImageError):
        util.parse_holes(Image(file="x"), [spec])


def test_run_command_exit_status(capsys):
    image = Image(file="x")
    assert util.run_command(image, "true") == 0
    assert util.run_command(image, "exit 3") == 3
    assert 'cmd: "exit 3" (stderr):' in capsys.readouterr().err


def test_run_command_quiet_level(capsys):
    log.set_loglevel(0)
    assert util.run_command(None, "exit 1") == 1
    assert capsys.readouterr().err == ""


def test_run_command_missing_shell(monkeypatch):
    monkeypatch.setenv("GENIMAGE_SHELL", "/nonexistent/shell")
    with pytest.raises(ImageError):
        util.run_command(Image(file="x"), "true")