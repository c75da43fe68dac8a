"""File, size, UUID and command helpers shared by the image handlers."""

from __future__ import annotations

import errno
import os
import random
import re
import stat
import subprocess

from genkd import log
from genkd.model import Extent, Image, ImageError

_CHUNK = 4096
_BLKRRPART = 0x125F

_NUMBER = re.compile(r"\s*\+?(0[xX][0-9a-fA-F]+|0[0-7]*|[1-9][0-9]*)")
_HOLE = re.compile(r"\s*\(\s*([0-9skKMG]+)\s*;\s*([0-9skKMG]+)\s*\)\s*")


def _strtoull(text: str) -> tuple[int, str]:
    match = _NUMBER.match(text)
    if match is None:
        return 0, text
    digits = match.group(1)
    if digits[:2] in ("0x", "0X"):
        value = int(digits, 16)
    elif len(digits) > 1 and digits[0] == "0":
        value = int(digits, 8)
    else:
        value = int(digits)
    return value, text[match.end():]


def _parse(text: str, allow_percent: bool) -> tuple[int, bool]:
    value, rest = _strtoull(text)
    suffix = rest[:1]
    if suffix == "G":
        return value << 30, False
    if suffix == "M":
        return value << 20, False
    if suffix in ("K", "k"):
        return value << 10, False
    if suffix == "s":
        return value * 512, False
    if suffix == "":
        return value, False
    if suffix == "%" and allow_percent:
        return value, True
    raise ValueError(f"Invalid size suffix '{rest}' in '{text}'")


def parse_size(text: str) -> int:
    """Parse a number with an optional G, M, K/k or s (sector) suffix."""
    return _parse(text, False)[0]


def parse_size_or_percent(text: str) -> tuple[int, bool]:
    """Like :func:`parse_size`, also accepting a ``%`` suffix."""
    return _parse(text, True)


def run_command(image: Image | None, command: str) -> int:
    """Run ``command`` through the shell and return its exit status."""
    level = log.get_loglevel()
    if level >= 3:
        note = " (stderr+stdout):"
    elif level >= 1:
        note = " (stderr):"
    else:
        note = ""
    log.info(f'cmd: "{command}"{note}', image)

    shell = os.environ.get("GENIMAGE_SHELL") or "/bin/sh"
    stderr = subprocess.DEVNULL if level < 1 else None
    stdout = subprocess.DEVNULL if level < 3 else 2
    try:
        result = subprocess.run([shell, "-c", command], stdout=stdout,
                                stderr=stderr, check=False)
    except OSError as exc:
        raise ImageError(f"Cannot execute {command}: {exc.strerror}",
                         image, exc.errno) from exc
    return result.returncode


def is_block_device(path: str) -> bool:
    try:
        return stat.S_ISBLK(os.stat(path).st_mode)
    except OSError:
        return False


def _open_output(image: Image, path: str, extra_flags: int = 0) -> int:
    flags = os.O_WRONLY | extra_flags
    flags |= os.O_EXCL if is_block_device(path) else os.O_CREAT
    try:
        return os.open(path, flags, 0o666)
    except OSError as exc:
        raise ImageError(f"open {path}: {exc.strerror}", image, exc.errno) from exc


def map_file_extents(path: str, size: int) -> list[Extent]:
    """Return the data extents of the first ``size`` bytes of ``path``."""
    seek_data = getattr(os, "SEEK_DATA", None)
    seek_hole = getattr(os, "SEEK_HOLE", None)
    if seek_data is None or seek_hole is None:
        return [Extent(0, size)]
    fd = os.open(path, os.O_RDONLY)
    try:
        extents: list[Extent] = []
        pos = 0
        while pos < size:
            try:
                start = os.lseek(fd, pos, seek_data)
            except OSError as exc:
                if exc.errno == errno.ENXIO:
                    break
                if exc.errno in (errno.EINVAL, errno.EOPNOTSUPP, errno.ENOTTY):
                    return [Extent(0, size)]
                raise
            if start >= size:
                break
            end = os.lseek(fd, start, seek_hole)
            extents.append(Extent(start, min(end, size)))
            pos = end
        return extents
    finally:
        os.close(fd)


def _write_bytes(fd: int, size: int, offset: int, byte: int) -> None:
    """Write ``size`` copies of ``byte`` at ``offset`` without moving the file offset."""
    if not size:
        return
    st = os.fstat(fd)
    if stat.S_ISREG(st.st_mode) and byte == 0 and offset + size > st.st_size:
        os.ftruncate(fd, offset + size)
        if offset >= st.st_size:
            return
        size = st.st_size - offset
    chunk = bytes([byte]) * _CHUNK
    while size:
        written = os.pwrite(fd, chunk[:min(size, _CHUNK)], offset)
        size -= written
        offset += written


def prepare_image(image: Image, size: int) -> None:
    """Create or clear the output file and give it ``size`` bytes."""
    path = image.output_path
    if is_block_device(path):
        insert_image(image, None, 2048, 0, 0)
        return
    fd = _open_output(image, path, os.O_TRUNC)
    try:
        os.ftruncate(fd, size)
    except OSError as exc:
        raise ImageError(f"failed to truncate {path} to {size}: {exc.strerror}",
                         image, exc.errno) from exc
    finally:
        os.close(fd)


def _copy_extents(image: Image, fd: int, in_fd: int, infile: str,
                  extents: list[Extent], size: int, offset: int) -> tuple[int, int]:
    in_pos = 0
    for ext in extents:
        if size <= 0:
            break
        gap = min(max(ext.start - in_pos, 0), size)
        try:
            _write_bytes(fd, gap, offset, 0)
        except OSError as exc:
            raise ImageError(f"writing {gap} bytes failed: {exc.strerror}",
                             image, exc.errno) from exc
        size -= gap
        offset += gap
        in_pos += gap
        while in_pos < ext.end and size > 0:
            now = min(ext.end - in_pos, _CHUNK, size)
            try:
                buf = os.pread(in_fd, now, in_pos)
            except OSError as exc:
                raise ImageError(f"reading {now} bytes from {infile} failed: "
                                 f"{exc.strerror}", image, exc.errno) from exc
            if not buf:
                break
            try:
                written = os.pwrite(fd, buf, offset)
            except OSError as exc:
                raise ImageError(f"write {len(buf)} bytes: {exc.strerror}",
                                 image, exc.errno) from exc
            if written < len(buf):
                raise ImageError(f"short write ({written} vs {len(buf)})",
                                 image, errno.EIO)
            size -= written
            offset += written
            in_pos += written
    return size, offset


def insert_image(image: Image, sub: Image | None, size: int, offset: int,
                 fill: int = 0) -> None:
    """Copy ``sub`` into ``image`` at ``offset``, filling up to ``size`` with ``fill``."""
    fd = _open_output(image, image.output_path)
    try:
        if sub is not None:
            infile = sub.output_path
            try:
                in_fd = os.open(infile, os.O_RDONLY)
            except OSError as exc:
                raise ImageError(f"open {infile}: {exc.strerror}",
                                 image, exc.errno) from exc
            try:
                try:
                    extents = map_file_extents(infile, size)
                except OSError as exc:
                    raise ImageError(f"fiemap {infile}: {exc.errno} {exc.strerror}",
                                     image, exc.errno) from exc
                image.debug(f"copying {size} bytes from {infile} at offset {offset}")
                size, offset = _copy_extents(image, fd, in_fd, infile,
                                             extents, size, offset)
            finally:
                os.close(in_fd)
        image.debug(f"adding {size} {fill:#x} bytes at offset {offset}")
        try:
            _write_bytes(fd, size, offset, fill)
        except OSError as exc:
            raise ImageError(f"writing {size} bytes failed: {exc.strerror}",
                             image, exc.errno) from exc
    finally:
        os.close(fd)


def insert_data(image: Image, data: bytes | str, outfile: str, offset: int) -> None:
    """Write ``data`` into ``outfile`` at ``offset``."""
    if isinstance(data, str):
        data = data.encode()
    fd = _open_output(image, outfile)
    try:
        view = memoryview(data)
        while view:
            try:
                written = os.pwrite(fd, view[:_CHUNK], offset)
            except OSError as exc:
                raise ImageError(f"write {outfile}: {exc.strerror}",
                                 image, exc.errno) from exc
            view = view[written:]
            offset += written
    finally:
        os.close(fd)


def extend_file(image: Image, size: int) -> None:
    """Grow the output file to ``size`` bytes."""
    outfile = image.output_path
    fd = _open_output(image, outfile)
    try:
        current = os.lseek(fd, 0, os.SEEK_END)
        if current > size:
            raise ImageError("output file is larger than requested size",
                             image, errno.EINVAL)
        if current == size:
            return
        try:
            os.ftruncate(fd, size)
        except OSError as exc:
            raise ImageError(f"ftruncate {outfile}: {exc.strerror}",
                             image, exc.errno) from exc
    finally:
        os.close(fd)


def uuid_validate(text: str) -> bool:
    """Check the textual form ``xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxxx``."""
    if len(text) != 36:
        return False
    hexdigits = set("0123456789abcdefABCDEF")
    for position, char in enumerate(text):
        if position in (8, 13, 18, 23):
            if char != "-":
                return False
        elif char not in hexdigits:
            return False
    return True


def uuid_parse(text: str) -> bytes:
    """Return the 16 on-disk bytes of a UUID, first three fields little-endian."""
    time_low = bytes.fromhex(text[0:8])
    time_mid = bytes.fromhex(text[9:13])
    time_hi = bytes.fromhex(text[14:18])
    rest = bytes.fromhex(text[19:23] + text[24:36])
    return time_low[::-1] + time_mid[::-1] + time_hi[::-1] + rest


def uuid_random() -> str:
    """Return a random version-4 UUID string."""
    def r() -> int:
        return random.getrandbits(31)

    return "%04x%04x-%04x-%04x-%04x-%04x%04x%04x" % (
        r() & 0xFFFF, r() & 0xFFFF,
        r() & 0xFFFF,
        (r() & 0x0FFF) | 0x4000,
        (r() & 0x3FFF) | 0x8000,
        r() & 0xFFFF, r() & 0xFFFF, r() & 0xFFFF,
    )


def block_device_size(image: Image, path: str) -> int:
    """Return the size in bytes of the block device at ``path``."""
    try:
        fd = os.open(path, os.O_RDONLY)
    except OSError as exc:
        raise ImageError(f"failed to determine size of block device {path}: "
                         f"{exc.strerror}", image, exc.errno) from exc
    try:
        if not stat.S_ISBLK(os.fstat(fd).st_mode):
            raise ImageError(f"failed to determine size of block device {path}: "
                             f"{os.strerror(errno.EINVAL)}", image, errno.EINVAL)
        return os.lseek(fd, 0, os.SEEK_END)
    finally:
        os.close(fd)


def reload_partitions(image: Image) -> None:
    """Ask the kernel to re-read the partition table of a block device output."""
    outfile = image.output_path
    if not is_block_device(outfile):
        return
    import fcntl

    try:
        fd = os.open(outfile, os.O_WRONLY | os.O_EXCL)
    except OSError as exc:
        raise ImageError(f"open: {exc.strerror}", image, exc.errno) from exc
    try:
        fcntl.ioctl(fd, _BLKRRPART)
    except OSError as exc:
        image.info(f"failed to re-read partition table: {exc.strerror}")
    finally:
        os.close(fd)


def _round_up(value: int, align: int) -> int:
    return (value + align - 1) // align * align


def _dir_size(image: Image, path: str, blocksize: int) -> int:
    try:
        entries = list(os.scandir(path))
    except OSError as exc:
        image.error(f"failed to open '{path}': {exc.strerror}")
        return 0
    size = 0
    for entry in entries:
        if entry.is_dir(follow_symlinks=False):
            size += _dir_size(image, entry.path, blocksize)
        elif entry.is_file(follow_symlinks=False):
            try:
                size += _round_up(entry.stat(follow_symlinks=False).st_size, blocksize)
            except OSError as exc:
                image.error(f"failed to stat '{entry.name}': {exc.strerror}")
    return size + blocksize


def image_dir_size(image: Image) -> int:
    """Estimate the space needed for the image's root directory."""
    if image.empty:
        return 0
    return _dir_size(image, image.mountpath, _CHUNK)


def parse_holes(image: Image, specs) -> list[Extent]:
    """Parse ``(<start>;<end>)`` hole specifications into ``image.holes``."""
    if image.holes:
        return image.holes
    holes = []
    for spec in specs or ():
        match = _HOLE.fullmatch(spec)
        if match is None:
            raise ImageError(f"invalid hole specification '{spec}', "
                             "use '(<start>;<end>)'", image, errno.EINVAL)
        hole = Extent(parse_size(match.group(1)), parse_size(match.group(2)))
        image.debug(f"added hole ({hole.start}, {hole.end})")
        holes.append(hole)
    image.holes = holes
    return holes