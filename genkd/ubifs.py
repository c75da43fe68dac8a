"""Handler that builds a UBIFS filesystem image with ``mkfs.ubifs``."""

from __future__ import annotations

import errno
from typing import Any, Mapping

from genkd.model import Image, ImageError
from genkd.util import parse_size, run_command


def _fail(image: Image, message: str, code: int | None = None) -> ImageError:
    image.error(message)
    return ImageError(message, image, code)


def _size(value: Any) -> int:
    if value is None or value == "":
        return 0
    if isinstance(value, int):
        return value
    return parse_size(str(value))


class UbifsHandler:
    """Runs ``mkfs.ubifs`` on the image root with the flash geometry."""

    type = "ubifs"
    no_rootpath = False
    opts: Mapping[str, Any] = {
        "extraargs": "",
        "max-size": None,
        "space-fixup": False,
    }

    def setup(self, image: Image, cfg: Mapping[str, Any] | None) -> None:
        flash = image.flash_type
        if flash is None:
            raise _fail(image, "no flash type given", errno.EINVAL)
        if flash.lebsize <= 0:
            raise _fail(image, f"invalid lebsize ({flash.lebsize}) in {flash.name}",
                        errno.EINVAL)

    def generate(self, image: Image) -> None:
        flash = image.flash_type
        if flash is None or flash.lebsize <= 0:
            raise _fail(image, "no usable flash type given", errno.EINVAL)
        settings = {**self.opts, **image.config}
        extraargs = settings.get("extraargs") or ""
        max_size = _size(settings.get("max-size"))
        space_fixup = bool(settings.get("space-fixup"))

        max_leb_cnt = (max_size if max_size else image.size) // flash.lebsize
        source = "" if image.empty else f"-d '{image.mountpath}'"
        tool = image.context.get_opt("mkfsubifs") if image.context else "mkfs.ubifs"

        command = (f"{tool} {source} {'-F' if space_fixup else ''} "
                   f"-e {flash.lebsize} -m {flash.minimum_io_unit_size} "
                   f"-c {max_leb_cnt} -o '{image.output_path}' {extraargs}")
        status = run_command(image, command)
        if status:
            raise _fail(image, f"mkfs.ubifs failed with status {status}")