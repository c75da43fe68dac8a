import struct

import pytest

from genkd.kdformat import (
    GPT_SECTORS,
    KBURN_FLAG_SPI_NAND_WRITE_WITH_OOB,
    KDIMG_HEADER_MAGIC,
    KDIMG_PART_MAGIC,
    KdHeader,
    KdPartEntry,
    MbrEntry,
    MediumType,
    TableType,
    build_mbr,
    gpt_partition_type_lookup,
    kburn_flag_fields,
    lba_to_chs,
    rounddown,
    roundup,
)
from genkd.model import Partition


def test_table_type_hybrid_contains_both():
    combined = TableType(int(TableType.MBR) | int(TableType.GPT))
    assert combined == TableType.HYBRID
    assert int(combined) & int(TableType.GPT)
    assert not (int(TableType(0)) & int(TableType.MBR))


def test_medium_type_values():
    assert MediumType(1) == MediumType.SPI_NAND
    assert MediumType(2) == MediumType.SPI_NOR
    assert MediumType(0) == MediumType.MMC


def test_part_entry_layout():
    sha = bytes(range(32))
    entry = KdPartEntry(offset=0x100000, size=8192, erase_size=4096,
                        max_size=0x200000, flag=1 << 50, content_offset=65536,
                        content_size=8192, content_sha256=sha, name="uboot")
    data = entry.pack()
    assert len(data) == 256
    fields = struct.unpack_from("<5I4xQII32s32s", data)
    assert fields[0] == KDIMG_PART_MAGIC
    assert fields[1:5] == (0x100000, 8192, 4096, 0x200000)
    assert fields[5] == 1 << 50
    assert fields[6:8] == (65536, 8192)
    assert fields[8] == sha
    assert fields[9].rstrip(b"\0") == b"uboot"
    assert data[104:] == bytes(256 - 104)


def test_part_entry_name_truncated_and_terminated():
    data = KdPartEntry(name="n" * 40).pack()
    name = data[72:104]
    assert name[:31] == b"n" * 31
    assert name[31] == 0


def test_header_layout():
    header = KdHeader(part_tbl_num=3, part_tbl_crc32=0x1234,
                      image_info="img", chip_info="k230", board_info="board")
    data = header.pack()
    assert len(data) == 512
    fields = struct.unpack_from("<6I32s32s64s", data)
    assert fields[0] == KDIMG_HEADER_MAGIC
    assert fields[1] == 0
    assert fields[3] == 0x02
    assert fields[4] == 3
    assert fields[5] == 0x1234
    assert fields[6].rstrip(b"\0") == b"img"
    assert fields[7].rstrip(b"\0") == b"k230"
    assert fields[8].rstrip(b"\0") == b"board"
    assert data[152:] == bytes(512 - 152)


def test_header_board_info_limited_to_63_bytes():
    data = KdHeader(board_info="b" * 100).pack()
    board = data[88:152]
    assert board[:63] == b"b" * 63
    assert board[63] == 0


def test_lba_to_chs_zero():
    assert lba_to_chs(0) == b"\0\0\0"


def test_lba_to_chs_first_sector_of_track():
    assert lba_to_chs(1) == bytes((0, 2, 0))


def test_mbr_entry_pack_uses_chs():
    entry = MbrEntry(partition_type=0x83, relative_sectors=2048,
                     total_sectors=4096, bootable=True)
    data = entry.pack()
    assert len(data) == 16
    assert data[0] == 0x80
    assert data[1:4] == lba_to_chs(2048)
    assert data[4] == 0x83
    assert data[5:8] == lba_to_chs(2048 + 4096 - 1)
    assert struct.unpack_from("<II", data, 8) == (2048, 4096)


def test_build_mbr_plain():
    parts = [
        Partition(name="a", offset=1024 * 1024, size=2 * 1024 * 1024,
                  in_partition_table=True, partition_type=0x83),
        Partition(name="skip", offset=0, size=512, in_partition_table=False),
        Partition(name="logical", offset=0, size=512, in_partition_table=True,
                  logical=True),
    ]
    data = build_mbr(0xDEADBEEF, parts)
    assert len(data) == 72
    assert struct.unpack_from("<I", data, 0)[0] == 0xDEADBEEF
    assert data[-2:] == b"\x55\xaa"
    first = data[6:22]
    assert first[4] == 0x83
    assert struct.unpack_from("<II", first, 8) == (
        1024 * 1024 // 512, 2 * 1024 * 1024 // 512)
    assert data[22:70] == bytes(48)


def test_build_mbr_hybrid_adds_protective_entry():
    parts = [
        Partition(name="typed", offset=4096, size=4096,
                  in_partition_table=True, partition_type=0x0C),
        Partition(name="untyped", offset=8192, size=4096,
                  in_partition_table=True),
    ]
    data = build_mbr(0, parts, hybrid=True, gpt_location=1024)
    assert data[6 + 4] == 0x0C
    protective = data[22:38]
    assert protective[4] == 0xEE
    assert struct.unpack_from("<II", protective, 8) == (
        1, 1024 // 512 + GPT_SECTORS - 2)
    assert data[38:70] == bytes(32)


def test_build_mbr_too_many_entries():
    parts = [Partition(name=str(n), offset=n * 512, size=512,
                       in_partition_table=True) for n in range(5)]
    with pytest.raises(ValueError):
        build_mbr(0, parts)


def test_gpt_lookup():
    assert gpt_partition_type_lookup("L") == "0fc63daf-8483-4772-8e79-3d69d8477de4"
    assert gpt_partition_type_lookup("UEFI") == gpt_partition_type_lookup("esp")
    assert gpt_partition_type_lookup("root-riscv64") == \
        "72ec70a6-cf74-40e6-bd49-4bda08e8f224"
    assert gpt_partition_type_lookup("no-such-type") is None


def test_kburn_flag_fields_roundtrip():
    flag = (KBURN_FLAG_SPI_NAND_WRITE_WITH_OOB << 48) | (2048 << 16) | 64
    kind, page, oob = kburn_flag_fields(flag)
    assert kind == KBURN_FLAG_SPI_NAND_WRITE_WITH_OOB
    assert page == 2048
    assert oob == 64


def test_kburn_flag_fields_zero():
    assert kburn_flag_fields(0) == (0, 0, 0)


@pytest.mark.parametrize("value", [1, 100, 4095, 4096, 4097, 65536, 123457])
def test_roundup_invariants(value):
    up = roundup(value, 4096)
    assert up % 4096 == 0
    assert value <= up < value + 4096


@pytest.mark.parametrize("value", [0, 1, 4095, 4096, 9000])
def test_rounddown_invariants(value):
    down = rounddown(value, 4096)
    assert down % 4096 == 0
    assert down <= value < down + 4096


def test_roundup_zero_and_exact():
    assert roundup(0, 4096) == 0
    assert roundup(65536, 4096) == 65536