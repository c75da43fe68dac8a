import pytest

from genkd.model import Context, Image, ImageError, Partition
from genkd.qemu import QemuHandler


@pytest.fixture
def shell(tmp_path, monkeypatch):
    log_file = tmp_path / "commands.log"
    script = tmp_path / "fake-sh"
    script.write_text(
        '#!/bin/sh\nprintf "%s\\n" "$2" >> "$GENKD_TEST_LOG"\n'
        'exit "${GENKD_TEST_STATUS:-0}"\n'
    )
    script.chmod(0o755)
    monkeypatch.setenv("GENIMAGE_SHELL", str(script))
    monkeypatch.setenv("GENKD_TEST_LOG", str(log_file))

    def commands():
        return log_file.read_text().splitlines() if log_file.exists() else []

    return commands


@pytest.fixture
def context(tmp_path):
    ctx = Context(outputpath=str(tmp_path / "images"), tmppath=str(tmp_path / "tmp"))
    ctx.add(Image(file="boot.img", size=512))
    ctx.add(Image(file="root.img", size=1024))
    return ctx


def _disk(context, partitions):
    return context.add(Image(file="disk.qcow2", partitions=partitions))


def test_setup_without_partition_images_fails(context):
    image = _disk(context, [Partition(name="empty")])
    with pytest.raises(ImageError, match="no partition given"):
        QemuHandler().setup(image, {})


def test_setup_uses_defaults_and_overrides(context):
    image = _disk(context, [Partition(name="boot", image="boot.img")])
    handler = QemuHandler()
    handler.setup(image, {})
    assert image.handler_priv.format == "qcow2"
    handler.setup(image, {"format": "vmdk"})
    assert image.handler_priv.format == "vmdk"


def test_generate_builds_convert_command(shell, context):
    image = _disk(context, [
        Partition(name="boot", image="boot.img"),
        Partition(name="gap"),
        Partition(name="root", image="root.img"),
    ])
    handler = QemuHandler()
    handler.setup(image, {"extraargs": "-p"})
    handler.generate(image)
    boot = context.get("boot.img").output_path
    root = context.get("root.img").output_path
    assert shell() == [
        f"qemu-img convert -p -O qcow2 '{boot}' '{root}' '{image.output_path}'"
    ]


def test_generate_reports_failing_command(shell, context, monkeypatch):
    monkeypatch.setenv("GENKD_TEST_STATUS", "2")
    image = _disk(context, [Partition(name="boot", image="boot.img")])
    handler = QemuHandler()
    handler.setup(image, {})
    with pytest.raises(ImageError):
        handler.generate(image)


def test_generate_missing_child_fails(shell, context):
    image = _disk(context, [Partition(name="x", image="missing.img")])
    handler = QemuHandler()
    handler.setup(image, {})
    with pytest.raises(ImageError, match="could not find missing.img"):
        handler.generate(image)
    assert shell() == []