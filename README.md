# genkd

`genkd` is a library for building firmware images for embedded boards
from partition descriptions. Each image type has a handler class with
`setup` and `generate` methods (and `parse` where the type collects
files):

| Type       | Handler                          | What `generate` produces                                         |
|------------|----------------------------------|------------------------------------------------------------------|
| `kdimage`  | `genkd.kdimage.KdImageHandler`   | Burn image: header, partition table with a SHA-256 per part, contents, optional MBR |
| `vfat`     | `genkd.vfat.VfatHandler`         | FAT filesystem made with `mkdosfs` and filled with `mmd`/`mcopy`; can be minimized |
| `ubi`      | `genkd.ubi.UbiHandler`           | UBI image made with `ubinize` from a generated `ubi.ini`         |
| `ubifs`    | `genkd.ubifs.UbifsHandler`       | UBIFS image made with `mkfs.ubifs`                               |
| `uffs`     | `genkd.uffs.UffsHandler`         | UFFS image made with `mkuffs`                                    |
| `squashfs` | `genkd.squashfs.SquashfsHandler` | SquashFS image made with `mksquashfs`                            |
| `tar`      | `genkd.tar.TarHandler`           | Tar archive of the image root; `z` for `.tar.gz`/`tgz`, `j` for `.tar.bz2`, otherwise `a` |
| `rauc`     | `genkd.rauc.RaucHandler`         | Bundle made with `rauc bundle`                                   |
| `qemu`     | `genkd.qemu.QemuHandler`         | Disk image made with `qemu-img convert`                          |

All handlers except `kdimage` run an external tool through a shell
(`/bin/sh`, or the program named by the `GENIMAGE_SHELL` environment
variable); the tool must be installed. The `kdimage` format is written
entirely in Python.

## The model

`genkd.model` holds the data the handlers work on:

- `Image` — an image to build: `file` (its name), `size`, `outfile`,
  `mountpath` (the root directory for filesystem types), `empty`,
  `partitions`, `holes`, `flash_type`, `config` (handler options) and
  `context`. `output_path` is `outfile` if set, else the file name
  under the context's `outputpath`.
- `Partition` — a partition or a file placed in an image: `name`,
  `offset`, `size`, `image` (the name of another image), `flag`,
  `erase_size`, `partition_type`, `in_partition_table`, `bootable`,
  `read_only`, `autoresize` and more.
- `FlashType` — flash geometry (`pebsize`, `lebsize`,
  `minimum_io_unit_size`, `page_size`, `block_pages`, `ecc_option`, …).
- `Extent` — a byte range `[start, end)`.
- `Context` — paths (`outputpath`, `tmppath`, …) and the images of a
  build. `add` registers an image, `get` finds one by name, and
  `get_opt` returns an option, falling back to default tool names for
  `mkdosfs`, `mcopy`, `mmd`, `mksquashfs`, `mkfsubifs`, `ubinize`,
  `tar`, `rauc` and `mkuffs`.

Failures raise `genkd.model.ImageError`, which carries `message`,
`image` and an `errno` value where one applies. A non-zero exit status
of an external tool is raised as `ImageError` too.

## Building a kdimage

```python
import os

from genkd.kdimage import KdImageHandler
from genkd.model import Context, Image, Partition

ctx = Context(outputpath="images", tmppath="tmp")
os.makedirs("images", exist_ok=True)

ctx.add(Image(file="uboot.bin", outfile="input/uboot.bin",
              size=os.path.getsize("input/uboot.bin")))
kd = ctx.add(Image(file="sysimage.kdimg", partitions=[
    Partition(name="uboot", offset=0x100000, image="uboot.bin"),
]))

handler = KdImageHandler()
handler.setup(kd, {
    "image_info": "demo",
    "chip_info": "chip",
    "board_info": "board",
    "partition-table-type": "none",   # or "mbr" / "dos"
    "medium-type": "mmc",             # or "spi_nand" / "spi_nor"
})
handler.generate(kd)
```

`setup` requires `image_info`, `chip_info` and `board_info`, rejects
unknown table or medium types, gives a partition with size 0 the size
of its image rounded up to 4096, and refuses overlapping partitions
(except with one named `loader`, or where the earlier image declares a
covering hole). `generate` writes each image's contents from offset
64 KiB on, aligned to 4096, padding with `0xFF` on SPI media and `0x00`
otherwise; an image used by several partitions is written once. It then
writes the 512-byte header and the 256-byte partition entries, both
with CRC-32 checksums, and truncates the file to the end of the
contents. With `mbr`/`dos`, a `partition_table_mbr` partition is added
and an MBR of at most four entries is generated for it.

`KdImageHandler` takes its options from the mapping passed to `setup`.
The other handlers read `image.config`, merged with the mapping passed
to `setup` or `parse`.

## Lower-level helpers

```python
from genkd.util import parse_size, uuid_validate
from genkd.kdformat import roundup, gpt_partition_type_lookup

parse_size("4k")                 # 4096
parse_size("2M")                 # 2097152
parse_size("8s")                 # 4096, sectors of 512 bytes
roundup(5000, 4096)              # 8192
gpt_partition_type_lookup("L")   # "0fc63daf-8483-4772-8e79-3d69d8477de4"
```

- `genkd.util`: `parse_size`, `parse_size_or_percent`, `run_command`,
  `prepare_image`, `insert_image`, `insert_data`, `extend_file`,
  `map_file_extents`, `uuid_validate`, `uuid_parse`, `uuid_random`,
  `is_block_device`, `block_device_size`, `reload_partitions`,
  `image_dir_size` and `parse_holes`.
- `genkd.kdformat`: `KdHeader`, `KdPartEntry` and `MbrEntry` with
  `pack()`, `build_mbr` (classic or hybrid), `lba_to_chs`,
  `kburn_flag_fields`, `roundup`, `rounddown`, and the `TableType` and
  `MediumType` enums.
- `genkd.vfat.find_last_valid_pos` returns the offset of the last used
  cluster of a FAT32 image.
- `genkd.kdimage`: `calculate_image_sha256` and `check_overlap`.

## Logging

`genkd.log` writes messages to standard error, prefixed with the level
and, for an image, its handler type and file name. `set_loglevel`
chooses how much is shown: `0` errors only, `1` adds information (the
default), `2` adds debug output, and `3` also passes the standard
output of external tools through to standard error. Below `1`, the
tools' standard error is discarded as well.

## What it does not do

- There is no command-line program and no configuration-file reader.
  You build `Image`, `Partition` and `Context` objects yourself and call
  each handler's `parse`, `setup` and `generate` in order, building
  child images before the images that use them.
- `KdImageHandler` does not write GPT partition tables;
  `partition-table-type = "gpt"` is rejected.
- No handler for a type outside the table above is included.

## Running the tests

The tests use pytest; install the `test` extra and run `pytest`.