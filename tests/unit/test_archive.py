from __future__ import annotations

import gzip
import io
import os
import tarfile
from pathlib import Path

import pytest
from conftest import MTIME, make_tar, member

from distfiles.errors import CorruptArchive, MemberTooLarge, UnknownFormat, UnsafePath
from distfiles.security.archive import ArchiveEntry, EntryKind, clear_path, extract_archive


def _pack_dir(src: Path, compression: str) -> io.BytesIO:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode=f"w:{compression}") as tar:
        tar.add(src, arcname=".")
    buf.seek(0)
    return buf


@pytest.mark.parametrize("compression", ["gz", "bz2", "xz"])
def test_roundtrip_reproduces_tree(tmp_path: Path, compression: str) -> None:
    src = tmp_path / "src"
    (src / "sub").mkdir(parents=True)
    (src / "file.txt").write_bytes(b"top level\n")
    (src / "sub" / "inner.txt").write_bytes(b"nested\n")
    os.symlink("file.txt", src / "link")
    os.utime(src / "file.txt", (MTIME, MTIME))
    os.utime(src / "sub" / "inner.txt", (MTIME + 10, MTIME + 10))
    os.utime(src / "sub", (MTIME + 20, MTIME + 20))

    dest = tmp_path / "out"
    count = extract_archive(dest, _pack_dir(src, compression))

    assert count == 4
    assert (dest / "file.txt").read_bytes() == b"top level\n"
    assert (dest / "sub" / "inner.txt").read_bytes() == b"nested\n"
    assert os.readlink(dest / "link") == "file.txt"
    assert int((dest / "file.txt").stat().st_mtime) == MTIME
    assert int((dest / "sub" / "inner.txt").stat().st_mtime) == MTIME + 10
    # directory time survives the later write of its child
    assert int((dest / "sub").stat().st_mtime) == MTIME + 20


@pytest.mark.parametrize("name", ["../evil.txt", "sub/../../evil.txt", "/tmp/evil.txt"])
def test_rejects_traversal_and_leaves_existing_content(tmp_path: Path, name: str) -> None:
    dest = tmp_path / "out"
    dest.mkdir()
    (dest / "keep.txt").write_text("keep", encoding="utf-8")
    data = make_tar([member(name, b"pwned")])

    with pytest.raises(UnsafePath):
        extract_archive(dest, io.BytesIO(data))

    assert (dest / "keep.txt").read_text(encoding="utf-8") == "keep"
    assert not (tmp_path / "evil.txt").exists()


def test_allows_double_dots_inside_a_name(tmp_path: Path) -> None:
    data = make_tar([member("notes..v2.txt", b"ok")])
    extract_archive(tmp_path, io.BytesIO(data))
    assert (tmp_path / "notes..v2.txt").read_bytes() == b"ok"


@pytest.mark.parametrize("target", ["../../outside", "/etc/passwd"])
def test_rejects_symlink_escaping_destination(tmp_path: Path, target: str) -> None:
    dest = tmp_path / "out"
    data = make_tar([member("link", kind=tarfile.SYMTYPE, linkname=target)])
    with pytest.raises(UnsafePath):
        extract_archive(dest, io.BytesIO(data))
    assert not (dest / "link").is_symlink()


def test_rejects_writes_through_symlinked_directory(tmp_path: Path) -> None:
    outside = tmp_path / "outside"
    outside.mkdir()
    dest = tmp_path / "out"
    dest.mkdir()
    os.symlink(outside, dest / "escape")

    data = make_tar([member("escape/owned.txt", b"x")])
    with pytest.raises(UnsafePath):
        extract_archive(dest, io.BytesIO(data))
    assert not (outside / "owned.txt").exists()


def test_hard_link_resolves_against_destination(tmp_path: Path) -> None:
    data = make_tar(
        [
            member("a.txt", b"shared"),
            member("b.txt", kind=tarfile.LNKTYPE, linkname="a.txt"),
        ]
    )
    extract_archive(tmp_path, io.BytesIO(data))
    assert (tmp_path / "b.txt").read_bytes() == b"shared"
    assert os.path.samefile(tmp_path / "a.txt", tmp_path / "b.txt")


def test_rejects_hard_link_outside_destination(tmp_path: Path) -> None:
    dest = tmp_path / "out"
    (tmp_path / "secret.txt").write_text("secret", encoding="utf-8")
    data = make_tar([member("b.txt", kind=tarfile.LNKTYPE, linkname="../secret.txt")])
    with pytest.raises(UnsafePath):
        extract_archive(dest, io.BytesIO(data))


def test_existing_directory_is_replaced_by_file(tmp_path: Path) -> None:
    (tmp_path / "thing").mkdir()
    (tmp_path / "thing" / "stale.txt").write_text("stale", encoding="utf-8")
    data = make_tar([member("thing", b"now a file")])

    extract_archive(tmp_path, io.BytesIO(data))

    assert (tmp_path / "thing").is_file()
    assert (tmp_path / "thing").read_bytes() == b"now a file"


def test_existing_file_and_symlink_are_replaced(tmp_path: Path) -> None:
    (tmp_path / "docs").write_text("was a file", encoding="utf-8")
    (tmp_path / "target.txt").write_text("do not touch", encoding="utf-8")
    os.symlink("target.txt", tmp_path / "README")
    data = make_tar(
        [
            member("docs", kind=tarfile.DIRTYPE, mode=0o755),
            member("README", b"fresh readme"),
        ]
    )

    extract_archive(tmp_path, io.BytesIO(data))

    assert (tmp_path / "docs").is_dir()
    assert not (tmp_path / "README").is_symlink()
    assert (tmp_path / "README").read_bytes() == b"fresh readme"
    assert (tmp_path / "target.txt").read_text(encoding="utf-8") == "do not touch"


def test_root_entry_does_not_wipe_destination(tmp_path: Path) -> None:
    (tmp_path / "artifact.tar.gz").write_bytes(b"already stored")
    data = make_tar([member("./", kind=tarfile.DIRTYPE, mode=0o755), member("./x.txt", b"x")])

    count = extract_archive(tmp_path, io.BytesIO(data))

    assert count == 1
    assert (tmp_path / "artifact.tar.gz").read_bytes() == b"already stored"


def test_creates_missing_parent_directories(tmp_path: Path) -> None:
    data = make_tar([member("deep/er/file.txt", b"deep")])
    extract_archive(tmp_path, io.BytesIO(data))
    assert (tmp_path / "deep" / "er" / "file.txt").read_bytes() == b"deep"


def test_skips_unsupported_entry_kinds(tmp_path: Path) -> None:
    data = make_tar([member("pipe", kind=tarfile.FIFOTYPE), member("real.txt", b"r")])
    count = extract_archive(tmp_path, io.BytesIO(data))
    assert count == 1
    assert not (tmp_path / "pipe").exists()


def test_rejects_oversized_member(tmp_path: Path) -> None:
    data = make_tar([member("big.bin", b"0123456789")])
    with pytest.raises(MemberTooLarge):
        extract_archive(tmp_path, io.BytesIO(data), max_member_bytes=4)
    assert not (tmp_path / "big.bin").exists()


def test_unknown_format_is_reported(tmp_path: Path) -> None:
    with pytest.raises(UnknownFormat):
        extract_archive(tmp_path, io.BytesIO(b"definitely not compressed"))


def test_gzip_without_tar_inside_is_corrupt(tmp_path: Path) -> None:
    with pytest.raises(CorruptArchive):
        extract_archive(tmp_path, io.BytesIO(gzip.compress(b"hello world")))


def test_truncated_archive_is_corrupt_and_keeps_earlier_entries(tmp_path: Path) -> None:
    data = make_tar([member("first.txt", b"complete"), member("blob.bin", os.urandom(256 * 1024))])
    with pytest.raises(CorruptArchive):
        extract_archive(tmp_path, io.BytesIO(data[: len(data) // 2]))
    assert (tmp_path / "first.txt").read_bytes() == b"complete"


def test_gzip_crc_mismatch_is_corrupt(tmp_path: Path) -> None:
    data = bytearray(make_tar([member("only.txt", b"data")]))
    data[-8] ^= 0xFF  # first byte of the CRC32 trailer
    with pytest.raises(CorruptArchive):
        extract_archive(tmp_path, io.BytesIO(bytes(data)))


@pytest.mark.parametrize("compression", ["gz", "bz2", "xz"])
def test_any_cut_short_of_the_end_is_corrupt(tmp_path: Path, compression: str) -> None:
    data = make_tar([member("a.txt", b"first"), member("b.txt", b"second")], compression)
    # past the container header, so every prefix still sniffs as the right format
    for cut in [*range(16, len(data), 5), len(data) - 1]:
        with pytest.raises(CorruptArchive):
            extract_archive(tmp_path / str(cut), io.BytesIO(data[:cut]))


def test_hard_link_to_symlink_links_the_symlink(tmp_path: Path) -> None:
    data = make_tar(
        [
            member("real.txt", b"real"),
            member("alias", kind=tarfile.SYMTYPE, linkname="real.txt"),
            member("hard", kind=tarfile.LNKTYPE, linkname="alias"),
        ]
    )
    extract_archive(tmp_path, io.BytesIO(data))
    assert (tmp_path / "hard").is_symlink()
    assert os.readlink(tmp_path / "hard") == "real.txt"
    assert os.lstat(tmp_path / "hard").st_ino == os.lstat(tmp_path / "alias").st_ino


def test_directory_replaced_by_symlink_keeps_target_mtime(tmp_path: Path) -> None:
    data = make_tar(
        [
            member("other", kind=tarfile.DIRTYPE, mode=0o755, mtime=MTIME - 1000),
            member("d", kind=tarfile.DIRTYPE, mode=0o755),
            member("d", kind=tarfile.SYMTYPE, linkname="other"),
        ]
    )
    extract_archive(tmp_path, io.BytesIO(data))
    assert (tmp_path / "d").is_symlink()
    assert (tmp_path / "other").stat().st_mtime == MTIME - 1000


def test_archive_entry_strips_special_bits() -> None:
    info, _ = member("tool", b"", mode=0o4755)
    entry = ArchiveEntry.from_member(info)
    assert entry is not None
    assert entry.kind is EntryKind.REGULAR
    assert entry.mode == 0o755


def test_clear_path_handles_missing_dir_and_file(tmp_path: Path) -> None:
    clear_path(tmp_path / "missing")
    (tmp_path / "d" / "e").mkdir(parents=True)
    clear_path(tmp_path / "d")
    assert not (tmp_path / "d").exists()
