"""Images, partitions, flash types and the context that holds them."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any

from genkd import log


class ImageError(Exception):
    """An image could not be set up or generated."""

    def __init__(self, message: str, image: Image | None = None,
                 errno: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.image = image
        self.errno = errno


@dataclass(frozen=True)
class Extent:
    """A byte range ``[start, end)``."""

    start: int
    end: int


@dataclass
class FlashType:
    """Geometry of a flash device."""

    name: str = ""
    pebsize: int = 0
    lebsize: int = 0
    numpebs: int = 0
    minimum_io_unit_size: int = 0
    vid_header_offset: int = 0
    sub_page_size: int = 0
    page_size: int = 0
    spare_size: int = 0
    block_pages: int = 0
    total_blocks: int = 0
    ecc_option: int = 0
    is_uffs: bool = False


@dataclass(eq=False)
class Partition:
    """A partition, or a file placed inside an image."""

    name: str | None = None
    offset: int = 0
    size: int = 0
    align: int = 0
    image: str | None = None
    imageoffset: int = 0
    partition_type: int = 0
    partition_type_uuid: str | None = None
    partition_uuid: str | None = None
    bootable: bool = False
    logical: bool = False
    in_partition_table: bool = False
    read_only: bool = False
    hidden: bool = False
    no_automount: bool = False
    autoresize: bool = False
    erase_size: int = 0
    flag: int = 0


@dataclass(eq=False)
class Image:
    """An image to build; ``handler`` is an object with a ``type`` attribute."""

    file: str
    size: int = 0
    outfile: str = ""
    mountpath: str = ""
    empty: bool = False
    partitions: list[Partition] = field(default_factory=list)
    holes: list[Extent] = field(default_factory=list)
    flash_type: FlashType | None = None
    config: dict[str, Any] = field(default_factory=dict)
    handler: Any = None
    handler_priv: Any = None
    context: Context | None = field(default=None, repr=False)

    @property
    def handler_type(self) -> str:
        kind = getattr(self.handler, "type", None)
        return kind if kind else "unknown"

    @property
    def output_path(self) -> str:
        """Path of the file this image is written to."""
        if self.outfile:
            return self.outfile
        if self.context is not None:
            return os.path.join(self.context.outputpath, self.file)
        return self.file

    @property
    def tmppath(self) -> str:
        return self.context.tmppath if self.context is not None else "tmp"

    def error(self, message: str) -> bool:
        return log.error(message, self)

    def info(self, message: str) -> bool:
        return log.info(message, self)

    def debug(self, message: str) -> bool:
        return log.debug(message, self)


_TOOL_DEFAULTS = {
    "mkdosfs": "mkdosfs",
    "mcopy": "mcopy",
    "mmd": "mmd",
    "mksquashfs": "mksquashfs",
    "mkfsubifs": "mkfs.ubifs",
    "ubinize": "ubinize",
    "tar": "tar",
    "rauc": "rauc",
    "mkuffs": "mkuffs",
}


@dataclass
class Context:
    """Paths, options and the registry of images."""

    outputpath: str = "images"
    tmppath: str = "tmp"
    rootpath: str = "root"
    inputpath: str = "input"
    options: dict[str, str] = field(default_factory=dict)
    images: dict[str, Image] = field(default_factory=dict)

    def add(self, image: Image) -> Image:
        image.context = self
        self.images[image.file] = image
        return image

    def get(self, name: str) -> Image | None:
        return self.images.get(name)

    def get_opt(self, name: str) -> str | None:
        if name in self.options:
            return self.options[name]
        return _TOOL_DEFAULTS.get(name)