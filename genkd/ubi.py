"""Handler that builds a UBI image from volume images with ``ubinize``."""

from __future__ import annotations

import errno
import os
from typing import Any, Mapping

from genkd.model import Image, ImageError
from genkd.util import run_command


def _fail(image: Image, message: str, code: int | None = None) -> ImageError:
    image.error(message)
    return ImageError(message, image, code)


class UbiHandler:
    """Writes a ubinize configuration for the partitions and runs ``ubinize``."""

    type = "ubi"
    no_rootpath = True
    opts: Mapping[str, Any] = {
        "extraargs": "",
        "minimize": False,
    }

    def setup(self, image: Image, cfg: Mapping[str, Any] | None) -> None:
        if image.flash_type is None:
            raise _fail(image, "no flash type given", errno.EINVAL)
        if sum(bool(part.autoresize) for part in image.partitions) > 1:
            raise _fail(image, "more than one volume has the autoresize flag set",
                        errno.EINVAL)

    def _volumes(self, image: Image) -> str:
        sections = []
        for vol_id, part in enumerate(image.partitions):
            child = image.context.get(part.image) if image.context and part.image else None
            size = part.size
            if not size:
                if child is None:
                    raise _fail(image, f"could not find {part.image}", errno.EINVAL)
                size = child.size
            lines = [f"[{part.name}]", "mode=ubi"]
            if child is not None:
                lines.append(f"image={child.output_path}")
            lines += [
                f"vol_id={vol_id}",
                f"vol_size={size}",
                f"vol_type={'static' if part.read_only else 'dynamic'}",
                f"vol_name={part.name}",
            ]
            if part.autoresize:
                lines.append("vol_flags=autoresize")
            lines.append("vol_alignment=1")
            sections.append("".join(line + "\n" for line in lines))
        return "".join(sections)

    def generate(self, image: Image) -> None:
        flash = image.flash_type
        if flash is None:
            raise _fail(image, "no flash type given", errno.EINVAL)
        settings = {**self.opts, **image.config}
        extraargs = settings.get("extraargs") or ""
        minimize = bool(settings.get("minimize"))

        inifile = os.path.join(image.tmppath, "ubi.ini")
        text = self._volumes(image)
        try:
            os.makedirs(image.tmppath, exist_ok=True)
            with open(inifile, "w") as stream:
                stream.write(text)
        except OSError as exc:
            raise _fail(image, f"creating temp file failed: {exc.strerror}",
                        exc.errno) from exc

        ubinize = image.context.get_opt("ubinize") if image.context else "ubinize"
        outfile = image.output_path
        status = run_command(
            image,
            f"{ubinize} -s {flash.sub_page_size} -O {flash.vid_header_offset} "
            f"-p {flash.pebsize} -m {flash.minimum_io_unit_size} "
            f"-o '{outfile}' '{inifile}' {extraargs}")

        if minimize:
            try:
                image.size = os.stat(outfile).st_size
            except OSError:
                pass

        if status:
            raise _fail(image, f"ubinize failed with status {status}")