"""Handler that packs the image root into a tar archive."""

from __future__ import annotations

from typing import Any, Mapping

from genkd.model import Image, ImageError
from genkd.util import run_command


def _compression_flag(filename: str) -> str:
    if ".tar.bz2" in filename:
        return "j"
    if ".tar.gz" in filename or "tgz" in filename:
        return "z"
    return "a"


class TarHandler:
    """Runs ``tar`` on the image root, compressing by file name."""

    type = "tar"
    no_rootpath = False
    opts: Mapping[str, Any] = {}

    def generate(self, image: Image) -> None:
        tar = image.context.get_opt("tar") if image.context else "tar"
        comp = _compression_flag(image.file)
        status = run_command(image, f"{tar} c{comp} -f '{image.output_path}' "
                                    f"-C '{image.mountpath}' .")
        if status:
            message = f"tar failed with status {status}"
            image.error(message)
            raise ImageError(message, image)