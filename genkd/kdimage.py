"""Handler that packs partition images into a Kendryte burn image."""

from __future__ import annotations

import errno
import hashlib
import os
import zlib
from dataclasses import dataclass, field
from typing import Any, Mapping

from genkd.kdformat import (
    KBURN_FLAG_SPI_NAND_WRITE_WITH_OOB,
    KD_HEADER_SIZE,
    KDIMG_CONTENT_START_OFFSET,
    KDIMG_HEADER_MAGIC,
    KDIMG_HEADER_VERSION,
    KdHeader,
    KdPartEntry,
    MBR_MAX_ENTRIES,
    MBR_TAIL_OFFSET,
    MediumType,
    TableType,
    build_mbr,
    kburn_flag_fields,
    roundup,
)
from genkd.model import Image, ImageError, Partition
from genkd.util import (
    insert_data,
    insert_image,
    is_block_device,
    prepare_image,
    reload_partitions,
)

MBR_PARTITION_NAME = "partition_table_mbr"
_ALIGN = 4096
_SHA_CHUNK = 4 * 1024 * 1024

_TABLE_TYPES = {
    "none": TableType.NONE,
    "mbr": TableType.MBR,
    "dos": TableType.MBR,
}

_MEDIUM_TYPES = {
    "mmc": MediumType.MMC,
    "spi_nand": MediumType.SPI_NAND,
    "spi_nor": MediumType.SPI_NOR,
}


@dataclass
class _KdState:
    header: KdHeader = field(default_factory=KdHeader)
    disksig: int = 0
    table_type: TableType = TableType.NONE
    medium_type: MediumType = MediumType.MMC
    file_size: int = KDIMG_CONTENT_START_OFFSET


def _get_child(image: Image, name: str | None) -> Image | None:
    if name is None or image.context is None:
        return None
    return image.context.get(name)


def calculate_image_sha256(path: str, offset: int, size: int) -> bytes:
    """Return the SHA-256 of ``size`` bytes of ``path`` starting at ``offset``."""
    digest = hashlib.sha256()
    with open(path, "rb") as stream:
        stream.seek(offset)
        remaining = size
        while remaining > 0:
            chunk = stream.read(min(remaining, _SHA_CHUNK))
            if not chunk:
                break
            digest.update(chunk)
            remaining -= len(chunk)
    return digest.digest()


def _has_hole_covering(image: Image, name: str | None, start: int, end: int) -> bool:
    child = _get_child(image, name)
    if child is None:
        return False
    return any(hole.start <= start and end <= hole.end for hole in child.holes)


def check_overlap(image: Image, part: Partition) -> None:
    """Raise if ``part`` overlaps a partition listed before it."""
    for other in image.partitions:
        if other is part:
            return
        if part.offset >= other.offset + other.size:
            continue
        if other.offset >= part.offset + part.size:
            continue
        if other.name == "loader":
            continue
        start = max(part.offset, other.offset)
        end = min(part.offset + part.size, other.offset + other.size)
        if _has_hole_covering(image, other.image, start - other.offset,
                              end - other.offset):
            continue
        message = (f"partition {part.name} (offset {part.offset:#x}, size "
                   f"{part.size:#x}) overlaps previous partition {other.name} "
                   f"(offset {other.offset:#x}, size {other.size:#x})")
        image.error(message)
        name = part.name or ""
        if not other.in_partition_table and (name == "[MBR]" or name.startswith("[GPT")):
            image.error("bootloaders, etc. that overlap with the partition table "
                        "must declare the overlapping area as a hole.")
        raise ImageError(message, image, errno.EINVAL)
    image.error("partition list corruption")
    raise ImageError("partition not found in its image", image, errno.EIO)


class KdImageHandler:
    """Builds a header, a partition table and the partition contents into one file."""

    type = "kdimage"
    no_rootpath = True
    opts: Mapping[str, Any] = {
        "image_info": None,
        "chip_info": None,
        "board_info": None,
        "disk-signature": None,
        "disk-uuid": None,
        "partition-table-type": "none",
        "gpt-location": None,
        "gpt-no-backup": False,
        "medium-type": "mmc",
    }

    def _fail(self, image: Image, message: str, code: int) -> ImageError:
        image.error(message)
        return ImageError(message, image, code)

    def _setup_part_image(self, image: Image, part: Partition) -> None:
        if not part.image:
            return
        child = _get_child(image, part.image)
        if child is None:
            raise self._fail(image, f"could not find {part.image}", errno.EINVAL)
        if part.size == 0:
            part.size = roundup(child.size, _ALIGN)
        if part.size == 0 or child.size > part.size:
            if kburn_flag_fields(part.flag)[0] == 0:
                raise self._fail(
                    image,
                    f"setup, part {part.name} size ({part.size}) too small for "
                    f"{child.file} ({child.size}), part flag {part.flag:x}",
                    errno.E2BIG)

    def setup(self, image: Image, cfg: Mapping[str, Any] | None) -> None:
        options = {**self.opts, **(cfg or {})}
        state = _KdState()
        image.handler_priv = state

        if is_block_device(image.output_path):
            raise self._fail(image, "not support write to block device", errno.EINVAL)

        for key in ("image_info", "chip_info", "board_info"):
            value = options.get(key)
            if value is None:
                raise self._fail(image, f"can not get '{key}'", errno.EINVAL)
            setattr(state.header, key, value)

        table_type = options.get("partition-table-type") or "none"
        if table_type == "gpt":
            raise self._fail(image, "kdimage not support gpt partition-table-type",
                             errno.EINVAL)
        if table_type not in _TABLE_TYPES:
            raise self._fail(image, f"'{table_type}' is not a valid partition-table-type",
                             errno.EINVAL)
        state.table_type = _TABLE_TYPES[table_type]

        medium = options.get("medium-type") or "mmc"
        if medium not in _MEDIUM_TYPES:
            raise self._fail(image, f"'{medium}' is not a valid medium-type", errno.EINVAL)
        state.medium_type = _MEDIUM_TYPES[medium]

        if state.table_type & TableType.MBR:
            image.partitions.append(Partition(name=MBR_PARTITION_NAME, offset=0,
                                              size=512, align=1))

        state.file_size = KDIMG_CONTENT_START_OFFSET
        state.header.part_tbl_num = 0
        table_entries = 0
        for part in image.partitions:
            state.header.part_tbl_num += 1
            if state.table_type == TableType.NONE:
                part.in_partition_table = False
            if part.partition_type_uuid and not state.table_type & TableType.GPT:
                raise self._fail(
                    image,
                    f"part {part.name}: 'partition-type-uuid' is only valid for gpt "
                    "and hybrid partition-table-type", errno.EINVAL)
            if part.partition_type and not state.table_type & TableType.MBR:
                raise self._fail(
                    image,
                    f"part {part.name}: 'partition-type' is only valid for mbr and "
                    "hybrid partition-table-type", errno.EINVAL)
            if part.in_partition_table:
                table_entries += 1
            self._setup_part_image(image, part)
            state.file_size += roundup(part.size, _ALIGN)
            check_overlap(image, part)

        if state.table_type & TableType.MBR and table_entries > MBR_MAX_ENTRIES:
            raise self._fail(
                image,
                f"mbr partition table support only max {MBR_MAX_ENTRIES} part, "
                f"but have {table_entries}", errno.EINVAL)

    def _generate_mbr(self, image: Image, state: _KdState) -> Image:
        image.info("Generating MBR partition table")
        try:
            tail = build_mbr(state.disksig, image.partitions)
        except ValueError as exc:
            raise self._fail(image, str(exc), errno.EINVAL) from exc
        os.makedirs(image.tmppath, exist_ok=True)
        sub = Image(file=MBR_PARTITION_NAME, size=512,
                    outfile=os.path.join(image.tmppath, MBR_PARTITION_NAME),
                    context=image.context)
        prepare_image(sub, 512)
        try:
            insert_data(sub, tail, sub.output_path, MBR_TAIL_OFFSET)
        except ImageError:
            sub.error("failed to write MBR")
            raise
        return sub

    def _check_child_size(self, image: Image, part: Partition, child: Image) -> None:
        if child.size <= part.size:
            return
        kind, page, oob = kburn_flag_fields(part.flag)
        if kind != KBURN_FLAG_SPI_NAND_WRITE_WITH_OOB:
            raise self._fail(
                image,
                f"part {part.name} size ({part.size}) too small for {child.file} "
                f"({child.size})", errno.E2BIG)
        page_oob = page + oob
        if page_oob == 0 or child.size % page_oob:
            raise self._fail(
                image,
                f"image size {child.size} not align to page size {page} and oob "
                f"size {oob}", errno.E2BIG)
        pages_only = child.size // page_oob * page
        if pages_only > part.size:
            raise self._fail(
                image,
                f"part {part.name} size ({part.size}) too small for {child.file} "
                f"({pages_only})", errno.E2BIG)

    @staticmethod
    def _entry(part: Partition, size: int, content_offset: int, content_size: int,
               sha256: bytes) -> KdPartEntry:
        return KdPartEntry(offset=part.offset, size=size, erase_size=part.erase_size,
                           max_size=part.size, flag=part.flag,
                           content_offset=content_offset, content_size=content_size,
                           content_sha256=sha256, name=part.name or "")

    def generate(self, image: Image) -> None:
        state = image.handler_priv
        if not isinstance(state, _KdState):
            raise ImageError("kdimage handler was not set up", image, errno.EINVAL)

        count = state.header.part_tbl_num
        write_offset = KDIMG_CONTENT_START_OFFSET
        outfile = image.output_path
        prepare_image(image, state.file_size)

        padding = 0xFF if state.medium_type in (MediumType.SPI_NAND,
                                                MediumType.SPI_NOR) else 0x00
        entries: list[KdPartEntry] = []
        records: dict[str, KdPartEntry] = {}

        for part in image.partitions:
            if not part.image:
                if part.name != MBR_PARTITION_NAME:
                    raise self._fail(image, f"part no image {part.name}", errno.EINVAL)
                child = self._generate_mbr(image, state)
            else:
                child = _get_child(image, part.image)
                if child is None:
                    raise self._fail(image, f"could not find {part.image}", errno.EINVAL)

            if child.size == 0:
                raise self._fail(image, f"image '{part.name}' size can not be zero",
                                 errno.EIO)
            self._check_child_size(image, part, child)

            aligned = roundup(child.size, _ALIGN) if child.size > _ALIGN else child.size
            source = f" from '{part.image}'" if part.image else ""
            image.info(
                f"adding {'logical' if part.logical else 'primary'} partition "
                f"'{part.name}'{' (in MBR)' if part.in_partition_table else ''}{source} "
                f"offset {part.offset:#x}({part.offset}), flag {part.flag:#x}({part.flag}), "
                f"part size {part.size:#x}({part.size}), file size {aligned:#x}({aligned}) ...")

            child_path = child.output_path
            record = records.get(child_path)
            if record is not None:
                entries.append(self._entry(part, aligned, record.content_offset,
                                           record.content_size, record.content_sha256))
            else:
                try:
                    insert_image(image, child, aligned, write_offset, padding)
                except ImageError:
                    image.error(f"failed to write image partition '{part.name}'")
                    raise
                try:
                    digest = calculate_image_sha256(outfile, write_offset, aligned)
                except OSError as exc:
                    raise self._fail(image, f"failed to calculate partition "
                                     f"'{part.name}' sha256: {exc.strerror}",
                                     exc.errno or errno.EIO) from exc
                entry = self._entry(part, aligned, write_offset, aligned, digest)
                records[child_path] = entry
                entries.append(entry)
                write_offset += roundup(aligned, _ALIGN)

            if len(entries) > count:
                raise self._fail(image, "image partition count not match", errno.ERANGE)

        entries.extend(KdPartEntry(magic=0) for _ in range(count - len(entries)))
        table = b"".join(entry.pack() for entry in entries)

        header = state.header
        header.magic = KDIMG_HEADER_MAGIC
        header.flag = 0
        header.version = KDIMG_HEADER_VERSION
        header.part_tbl_crc32 = zlib.crc32(table)
        header.crc32 = 0
        header.crc32 = zlib.crc32(header.pack())

        try:
            insert_data(image, header.pack(), outfile, 0)
        except ImageError as exc:
            raise self._fail(image, "write image header failed", errno.EIO) from exc
        try:
            insert_data(image, table, outfile, KD_HEADER_SIZE)
        except ImageError as exc:
            raise self._fail(image, "write image partition info failed", errno.EIO) from exc

        try:
            os.truncate(outfile, write_offset)
        except OSError as exc:
            raise self._fail(image, f"failed to truncate {outfile} to {write_offset}: "
                             f"{exc.strerror}", exc.errno or errno.EIO) from exc

        if not is_block_device(outfile):
            try:
                actual = os.stat(outfile).st_size
            except OSError as exc:
                raise self._fail(image, f"stat({outfile}) failed: {exc.strerror}",
                                 exc.errno or errno.EIO) from exc
            if actual != write_offset:
                raise self._fail(image, f"unexpected output file size: {write_offset} "
                                 f"!= {actual}", errno.EINVAL)

        image.info(f"Generate Kendryte Image at {outfile}, size "
                   f"{write_offset:#x}({write_offset})")

        if state.table_type != TableType.NONE:
            reload_partitions(image)