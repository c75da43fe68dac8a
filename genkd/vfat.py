"""Handler that builds a FAT filesystem image with mtools."""

from __future__ import annotations

import errno
import os
import struct
from typing import Any, Mapping

from genkd.model import Image, ImageError, Partition
from genkd.util import prepare_image, run_command

FAT32_MASK = 0x0FFFFFFF
_FAT32_BAD_OR_END = 0x0FFFFFF8


def _fail(image: Image, message: str, code: int | None = None) -> ImageError:
    image.error(message)
    return ImageError(message, image, code)


def _tool(image: Image, name: str) -> str:
    if image.context is not None:
        return image.context.get_opt(name) or name
    return name


def find_last_valid_pos(path: str) -> int:
    """Return the byte offset of the last used cluster in a FAT32 image."""
    with open(path, "rb") as stream:
        boot = stream.read(512).ljust(512, b"\0")
        (bytes_per_sector,) = struct.unpack_from("<H", boot, 11)
        sectors_per_cluster = boot[13]
        (reserved_sectors,) = struct.unpack_from("<H", boot, 14)
        num_fats = boot[16]
        (sectors_per_fat,) = struct.unpack_from("<I", boot, 36)

        fat_offset = reserved_sectors * bytes_per_sector
        fat_size = sectors_per_fat * bytes_per_sector
        cluster_size = sectors_per_cluster * bytes_per_sector
        data_offset = (reserved_sectors + num_fats * sectors_per_fat) * bytes_per_sector
        num_entries = fat_size // 4

        stream.seek(fat_offset)
        fat = stream.read(num_entries * 4).ljust(num_entries * 4, b"\0")

    last_used = 0
    for cluster, (entry,) in enumerate(struct.iter_unpack("<I", fat)):
        if cluster < 2:
            continue
        entry &= FAT32_MASK
        if entry and entry < _FAT32_BAD_OR_END:
            last_used = cluster

    if not last_used:
        raise ValueError("No used clusters found.")
    return data_offset + last_used * cluster_size


class VfatHandler:
    """Formats the image with ``mkdosfs`` and copies files in with ``mcopy``."""

    type = "vfat"
    no_rootpath = False
    opts: Mapping[str, Any] = {
        "extraargs": "",
        "label": "",
        "files": (),
        "file": {},
        "minimize": False,
    }

    def _settings(self, image: Image, cfg: Mapping[str, Any] | None = None) -> dict:
        return {**self.opts, **image.config, **(cfg or {})}

    def parse(self, image: Image, cfg: Mapping[str, Any] | None) -> None:
        settings = self._settings(image, cfg)
        for title, section in (settings.get("file") or {}).items():
            section = section or {}
            image.partitions.append(Partition(name=title, image=section.get("image")))
        for name in settings.get("files") or ():
            image.partitions.append(Partition(name="", image=name))

    def setup(self, image: Image, cfg: Mapping[str, Any] | None) -> None:
        if not image.size:
            raise _fail(image, "no size given or must not be zero", errno.EINVAL)
        label = self._settings(image, cfg).get("label")
        if label and len(label) > 11:
            raise _fail(image, "vfat volume name cannot be longer than 11 characters",
                        errno.EINVAL)

    def _minimize(self, image: Image, outfile: str) -> None:
        try:
            offset = find_last_valid_pos(outfile)
        except OSError:
            image.error(f"open image output file ({outfile}) failed.")
            return
        except ValueError as exc:
            image.error(str(exc))
            return
        if offset > 0:
            current = os.stat(outfile).st_size
            image.info(f"minimize image size {current} to {offset}")
            image.size = offset

    def generate(self, image: Image) -> None:
        settings = self._settings(image)
        extraargs = settings.get("extraargs") or ""
        label = settings.get("label") or ""
        label_arg = f"-n '{label}'" if label else ""
        minimize = bool(settings.get("minimize"))
        outfile = image.output_path

        prepare_image(image, image.size)

        status = run_command(image, f"{_tool(image, 'mkdosfs')} {extraargs} "
                                    f"{label_arg} '{outfile}'")
        if status:
            raise _fail(image, f"mkdosfs failed with status {status}")

        mcopy = _tool(image, "mcopy")
        for part in image.partitions:
            child = image.context.get(part.image) if image.context and part.image else None
            if child is None:
                raise _fail(image, f"could not find {part.image}", errno.EINVAL)
            target = part.name or ""
            parts = target.split("/")[:-1]
            for depth in range(1, len(parts) + 1):
                directory = "/".join(parts[:depth])
                # mmd fails when the directory already exists; that is fine.
                run_command(image, f"MTOOLS_SKIP_CHECK=1 {_tool(image, 'mmd')} -DsS "
                                   f"-i {outfile} '::{directory}'")
            image.info(f"adding file '{child.file}' as '{target or child.file}' ...")
            status = run_command(image, f"MTOOLS_SKIP_CHECK=1 {mcopy} -sp -i "
                                        f"'{outfile}' '{child.output_path}' '::{target}'")
            if status:
                raise _fail(image, f"mcopy failed with status {status}")

        if image.partitions:
            return

        status = 0
        if not image.empty:
            status = run_command(image, f"MTOOLS_SKIP_CHECK=1 {mcopy} -sp -i "
                                        f"'{outfile}' '{image.mountpath}'/* ::")

        if minimize:
            self._minimize(image, outfile)

        if status:
            raise _fail(image, f"mcopy failed with status {status}")