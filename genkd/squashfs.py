"""Handler that builds a squashfs filesystem image."""

from __future__ import annotations

import errno
import os
from typing import Any, Mapping

from genkd.model import Image, ImageError
from genkd.util import parse_size, run_command

_NO_COMPRESSION = ("-comp gzip -noInodeCompression -noDataCompression "
                   "-noFragmentCompression -noXattrCompression")


def _fail(image: Image, message: str, code: int | None = None) -> ImageError:
    image.error(message)
    return ImageError(message, image, code)


class SquashfsHandler:
    """Runs ``mksquashfs`` on the image root; compression ``none`` disables it."""

    type = "squashfs"
    no_rootpath = False
    opts: Mapping[str, Any] = {
        "extraargs": "",
        "compression": "gzip",
        "block-size": "4096",
    }

    def generate(self, image: Image) -> None:
        settings = {**self.opts, **image.config}
        extraargs = settings.get("extraargs") or ""
        compression = str(settings.get("compression") or "gzip")
        block = settings.get("block-size")
        block_size = block if isinstance(block, int) else parse_size(str(block))

        if compression.lower() == "none":
            comp = _NO_COMPRESSION
        else:
            comp = f"-comp {compression}"[:127]

        mksquashfs = image.context.get_opt("mksquashfs") if image.context else "mksquashfs"
        outfile = image.output_path
        status = run_command(image, f"{mksquashfs} '{image.mountpath}' '{outfile}' "
                                    f"-b {block_size} -noappend {comp} {extraargs}")
        if status:
            raise _fail(image, f"mksquashfs failed with status {status}")

        try:
            file_size = os.stat(outfile).st_size
        except OSError as exc:
            raise _fail(image, f"stat({outfile}) failed: {exc.strerror}",
                        exc.errno) from exc

        if image.size and file_size > image.size:
            raise _fail(image, f"generated image {outfile} is larger than given image "
                               f"size ({file_size} v {image.size})", errno.E2BIG)

        image.debug(f"setting image size to {file_size} bytes")
        image.size = file_size