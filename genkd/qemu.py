"""Handler that converts partition images into a virtual machine disk image."""

from __future__ import annotations

import errno
from dataclasses import dataclass
from typing import Any, Mapping

from genkd.model import Image, ImageError
from genkd.util import run_command


@dataclass(frozen=True)
class _QemuSettings:
    format: str
    extraargs: str


def _fail(image: Image, message: str, code: int | None = None) -> ImageError:
    image.error(message)
    return ImageError(message, image, code)


class QemuHandler:
    """Joins the partition images with ``qemu-img convert``."""

    type = "qemu"
    no_rootpath = True
    opts: Mapping[str, Any] = {
        "format": "qcow2",
        "extraargs": "",
    }

    def setup(self, image: Image, cfg: Mapping[str, Any] | None) -> None:
        if not any(part.image for part in image.partitions):
            raise _fail(image, "no partition given", errno.EINVAL)
        options = {**self.opts, **image.config, **(cfg or {})}
        image.handler_priv = _QemuSettings(
            format=str(options.get("format") or self.opts["format"]),
            extraargs=str(options.get("extraargs") or ""),
        )

    def generate(self, image: Image) -> None:
        settings = image.handler_priv
        if not isinstance(settings, _QemuSettings):
            raise ImageError("qemu handler was not set up", image, errno.EINVAL)

        files = []
        for part in image.partitions:
            if not part.image:
                image.debug(f"skipping partition {part.name}")
                continue
            image.info(f"adding partition {part.name} from {part.image} ...")
            child = image.context.get(part.image) if image.context else None
            if child is None:
                raise _fail(image, f"could not find {part.image}", errno.EINVAL)
            files.append(f"'{child.output_path}'")

        command = (f"qemu-img convert {settings.extraargs} -O {settings.format} "
                   f"{' '.join(files)} '{image.output_path}'")
        status = run_command(image, command)
        if status:
            raise _fail(image, f"qemu-img failed with status {status}")