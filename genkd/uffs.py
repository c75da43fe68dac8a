"""Handler that builds a UFFS flash filesystem image with ``mkuffs``."""

from __future__ import annotations

import contextlib
import errno
import os
from typing import Any, Mapping

from genkd.model import Image, ImageError
from genkd.util import parse_size, run_command

ECC_OPTIONS = ("none", "soft", "hw", "auto")


def _fail(image: Image, message: str, code: int | None = None) -> ImageError:
    image.error(message)
    return ImageError(message, image, code)


def _size(value: Any) -> int:
    if value is None or value == "":
        return 0
    if isinstance(value, int):
        return value
    return parse_size(str(value))


class UffsHandler:
    """Runs ``mkuffs`` on the image root for a UFFS flash type."""

    type = "uffs"
    no_rootpath = False
    opts: Mapping[str, Any] = {
        "extraargs": "",
        "size": "",
    }

    def setup(self, image: Image, cfg: Mapping[str, Any] | None) -> None:
        flash = image.flash_type
        if flash is None:
            raise _fail(image, "no flash type given", errno.EINVAL)
        if not flash.is_uffs:
            raise _fail(image, "not uffs flash type given", errno.EINVAL)
        if not flash.page_size or not flash.block_pages or not flash.total_blocks:
            raise _fail(
                image,
                f"invalid page-size ({flash.page_size}) or block-pages "
                f"({flash.block_pages}) or total-blocks ({flash.total_blocks}) "
                f"in {flash.name}", errno.EINVAL)
        if flash.ecc_option > 3:
            raise _fail(image, "invalid uffs flash ecc option given", errno.EINVAL)

    def generate(self, image: Image) -> None:
        flash = image.flash_type
        if flash is None or not flash.page_size or not flash.block_pages:
            raise _fail(image, "no usable flash type given", errno.EINVAL)
        settings = {**self.opts, **image.config}
        extraargs = settings.get("extraargs") or ""
        part_size = _size(settings.get("size"))
        block_bytes = flash.page_size * flash.block_pages

        if part_size % block_bytes:
            raise _fail(image, f"image size ({part_size}) is invalid, should align "
                               f"to ({block_bytes})", errno.EINVAL)

        outfile = image.output_path
        with contextlib.suppress(FileNotFoundError):
            os.remove(outfile)

        tool = image.context.get_opt("mkuffs") if image.context else "mkuffs"
        command = (f"{tool} -f {outfile} -p {flash.page_size} -s {flash.spare_size} "
                   f"-b {flash.block_pages} -t {part_size // block_bytes} "
                   f"-x {ECC_OPTIONS[flash.ecc_option]} -o 0 -d {image.mountpath} "
                   f"{extraargs}")
        status = run_command(image, command)
        image.info(f"Generate {'success' if status == 0 else 'failed'} ({status})")

        with contextlib.suppress(OSError):
            image.size = os.stat(outfile).st_size

        if status:
            raise _fail(image, f"mkuffs failed with status {status}")