import os

import pytest

from genkd.model import Context, Image, ImageError
from genkd.rauc import RaucHandler, RaucRole


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
    os.makedirs(ctx.outputpath)
    for name, data in (("key.pem", b"k"), ("cert.pem", b"c"),
                       ("rootfs.ext4", b"0123456789"), ("kernel.bin", b"kernel")):
        image = ctx.add(Image(file=name, size=len(data)))
        with open(image.output_path, "wb") as stream:
            stream.write(data)
    return ctx


def _bundle(context, cfg):
    return context.add(Image(file="update.raucb", config=dict(cfg)))


BASE = {"key": "key.pem", "cert": "cert.pem", "manifest": "[update]\ncompatible=x\n"}


def test_parse_requires_key(context):
    image = _bundle(context, {"cert": "cert.pem"})
    with pytest.raises(ImageError, match="'key'"):
        RaucHandler().parse(image, {})


def test_parse_requires_cert(context):
    image = _bundle(context, {"key": "key.pem"})
    with pytest.raises(ImageError, match="'cert'"):
        RaucHandler().parse(image, {})


def test_parse_collects_roles(context):
    cfg = {**BASE,
           "key": "pkcs11:object=signing",
           "intermediate": ["inter.pem", "pkcs11:object=cert"],
           "file": {"rootfs.img": {"image": "rootfs.ext4", "offset": "1k"}},
           "files": ["kernel.bin"]}
    image = _bundle(context, cfg)
    RaucHandler().parse(image, cfg)
    roles = [(p.image, p.partition_type) for p in image.partitions]
    assert roles == [
        ("cert.pem", RaucRole.CERT),
        ("inter.pem", RaucRole.INTERMEDIATE),
        ("rootfs.ext4", RaucRole.CONTENT),
        ("kernel.bin", RaucRole.CONTENT),
    ]
    assert image.partitions[2].name == "rootfs.img"
    assert image.partitions[2].imageoffset == 1024


def test_setup_requires_manifest(context):
    image = _bundle(context, {"key": "key.pem", "cert": "cert.pem"})
    with pytest.raises(ImageError, match="manifest"):
        RaucHandler().setup(image, {})


def test_generate_stages_files_and_runs_rauc(shell, context):
    cfg = {**BASE,
           "intermediate": ["pkcs11:object=cert"],
           "file": {"sub/rootfs.img": {"image": "rootfs.ext4", "offset": "4"}},
           "files": ["kernel.bin"]}
    image = _bundle(context, cfg)
    handler = RaucHandler()
    handler.parse(image, cfg)
    handler.setup(image, cfg)
    handler.generate(image)

    tmpdir = os.path.join(context.tmppath, "rauc-update.raucb")
    with open(os.path.join(tmpdir, "manifest.raucm")) as stream:
        assert stream.read() == BASE["manifest"]
    with open(os.path.join(tmpdir, "sub", "rootfs.img"), "rb") as stream:
        assert stream.read() == b"456789"
    with open(os.path.join(tmpdir, "kernel.bin"), "rb") as stream:
        assert stream.read() == b"kernel"

    (command,) = shell()
    assert command.startswith(f"rauc bundle '{tmpdir}' ")
    assert f"--cert='{context.get('cert.pem').output_path}'" in command
    assert f"--key='{context.get('key.pem').output_path}'" in command
    assert "--intermediate='pkcs11:object=cert'" in command
    assert command.endswith(f"'{image.output_path}'")


def test_generate_failure_raises(shell, context, monkeypatch):
    monkeypatch.setenv("GENKD_TEST_STATUS", "1")
    image = _bundle(context, BASE)
    handler = RaucHandler()
    handler.parse(image, BASE)
    with pytest.raises(ImageError):
        handler.generate(image)