"""Handler that builds a RAUC update bundle."""

from __future__ import annotations

import contextlib
import errno
import os
import re
import shutil
from enum import IntEnum
from typing import Any, Mapping

from genkd.model import Image, ImageError, Partition
from genkd.util import parse_size, run_command

PKCS11_PREFIX = "pkcs11:"


class RaucRole(IntEnum):
    """What a partition of a bundle holds."""

    CONTENT = 0
    KEY = 1
    CERT = 2
    KEYRING = 3
    INTERMEDIATE = 4


def _fail(image: Image, message: str, code: int | None = None) -> ImageError:
    image.error(message)
    return ImageError(message, image, code)


def _sanitize_path(path: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]", "_", path)


def _copy(image: Image, source: str, target: str, offset: int) -> None:
    with contextlib.suppress(FileNotFoundError):
        os.unlink(target)
    try:
        with open(source, "rb") as src, open(target, "wb") as dst:
            src.seek(offset)
            shutil.copyfileobj(src, dst)
    except OSError as exc:
        raise _fail(image, f"copying '{source}' to '{target}' failed: {exc.strerror}",
                    exc.errno) from exc


class RaucHandler:
    """Collects content files, key and certificates and runs ``rauc bundle``."""

    type = "rauc"
    no_rootpath = True
    opts: Mapping[str, Any] = {
        "extraargs": "",
        "files": (),
        "file": {},
        "key": None,
        "cert": None,
        "keyring": None,
        "intermediate": (),
        "manifest": None,
    }

    def _settings(self, image: Image, cfg: Mapping[str, Any] | None = None) -> dict:
        return {**self.opts, **image.config, **(cfg or {})}

    def parse(self, image: Image, cfg: Mapping[str, Any] | None) -> None:
        settings = self._settings(image, cfg)

        for option, role in (("key", RaucRole.KEY), ("cert", RaucRole.CERT)):
            value = settings.get(option)
            if not value:
                raise _fail(image, f"Mandatory '{option}' option is missing!", errno.EINVAL)
            if not value.startswith(PKCS11_PREFIX):
                image.partitions.append(Partition(image=value, partition_type=role))

        keyring = settings.get("keyring")
        if keyring:
            image.partitions.append(Partition(image=keyring,
                                              partition_type=RaucRole.KEYRING))

        for uri in settings.get("intermediate") or ():
            if not uri.startswith(PKCS11_PREFIX):
                image.partitions.append(Partition(image=uri,
                                                  partition_type=RaucRole.INTERMEDIATE))

        for title, section in (settings.get("file") or {}).items():
            section = section or {}
            image.partitions.append(Partition(
                name=title,
                image=section.get("image"),
                imageoffset=parse_size(str(section.get("offset", "0"))),
                partition_type=RaucRole.CONTENT,
            ))

        for name in settings.get("files") or ():
            image.partitions.append(Partition(image=name,
                                              partition_type=RaucRole.CONTENT))

    def setup(self, image: Image, cfg: Mapping[str, Any] | None) -> None:
        if not self._settings(image, cfg).get("manifest"):
            raise _fail(image, "Mandatory 'manifest' option is missing!", errno.EINVAL)

    def generate(self, image: Image) -> None:
        settings = self._settings(image)
        extraargs = settings.get("extraargs") or ""
        manifest = settings.get("manifest")
        if manifest is None:
            raise _fail(image, "Mandatory 'manifest' option is missing!", errno.EINVAL)
        cert = settings.get("cert")
        key = settings.get("key")
        keyring = settings.get("keyring")

        image.debug(f"manifest = '{manifest}'")
        tmpdir = os.path.join(image.tmppath, f"rauc-{_sanitize_path(image.file)}")
        try:
            os.makedirs(tmpdir, exist_ok=True)
            with open(os.path.join(tmpdir, "manifest.raucm"), "w") as stream:
                stream.write(manifest)
        except OSError as exc:
            raise _fail(image, f"preparing {tmpdir} failed: {exc.strerror}",
                        exc.errno) from exc

        intermediate = [f" --intermediate='{uri}'"
                        for uri in settings.get("intermediate") or ()
                        if uri.startswith(PKCS11_PREFIX)]

        for part in image.partitions:
            child = image.context.get(part.image) if image.context and part.image else None
            if child is None:
                raise _fail(image, f"could not find {part.image}", errno.EINVAL)
            path = child.output_path
            role = part.partition_type
            if role == RaucRole.CERT:
                cert = path
            elif role == RaucRole.KEY:
                key = path
            elif role == RaucRole.KEYRING:
                keyring = path
            elif role == RaucRole.INTERMEDIATE:
                intermediate.append(f" --intermediate='{path}'")
            if role != RaucRole.CONTENT:
                continue

            target = part.name or os.path.basename(child.file)
            parent = os.path.dirname(target)
            if parent:
                try:
                    os.makedirs(os.path.join(tmpdir, parent), exist_ok=True)
                except OSError as exc:
                    raise _fail(image, f"creating {parent} failed: {exc.strerror}",
                                exc.errno) from exc
            image.info(f"adding file '{child.file}' as '{target}' "
                       f"(offset={part.imageoffset})...")
            _copy(image, path, os.path.join(tmpdir, target), part.imageoffset)

        keyringarg = f"--keyring='{keyring}'" if keyring else ""
        outfile = image.output_path
        with contextlib.suppress(FileNotFoundError):
            os.remove(outfile)

        rauc = image.context.get_opt("rauc") if image.context else "rauc"
        command = (f"{rauc} bundle '{tmpdir}' --cert='{cert}' --key='{key}' "
                   f"{keyringarg} {''.join(intermediate)} {extraargs} '{outfile}'")
        status = run_command(image, command)
        if status:
            raise _fail(image, f"rauc failed with status {status}")