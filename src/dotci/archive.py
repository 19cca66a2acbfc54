# archive.py
from __future__ import annotations

import copy
import os
import posixpath
import shutil
import tarfile
import time
from pathlib import Path
from typing import BinaryIO, Iterable, List, Sequence

from .errors import ArchiveError

# ---------------------------------------------------------------------
# Tar streams are how filesystem trees move in and out of containers:
#   - source trees are archived on the host and copied into /app
#   - artifacts come out of a container as a tar stream and are re-rooted
#     before being copied into the next container
#   - artifacts can be exported back to the host through extract_archive
#
# Every path that comes *out* of an archive goes through the containment
# check below before it touches a filesystem.
# ---------------------------------------------------------------------


def _is_within(base: str, target: str) -> bool:
    return os.path.commonpath([base, target]) == base


def safe_join(base: str | Path, name: str) -> str:
    """
    Resolve an archive entry name against base and refuse anything that
    would land outside of it ("../x", "/etc/passwd", "a/../../x").
    """
    base_abs = os.path.abspath(str(base))
    target = os.path.abspath(os.path.join(base_abs, name))
    if not _is_within(base_abs, target):
        raise ArchiveError(f"illegal path in archive: {name}")
    return target


def _clean_member_name(name: str) -> str:
    """Normalize a member name relative to the archive root (container side)."""
    cleaned = posixpath.normpath(name) if name else "."
    if name.startswith("/") or cleaned == ".." or cleaned.startswith("../"):
        raise ArchiveError(f"illegal path in archive: {name}")
    return "" if cleaned == "." else cleaned


def _is_under(path: Path, dirs: Sequence[Path]) -> bool:
    return any(path == d or d in path.parents for d in dirs)


def _iter_tree(root: Path, skip: Sequence[Path] = ()) -> Iterable[Path]:
    # deterministic traversal; anything at or below a skipped dir is left out
    yield root
    if root.is_dir() and not root.is_symlink():
        for p in sorted(root.rglob("*")):
            if skip and _is_under(p.resolve(), skip):
                continue
            yield p


def _arc_root(src: Path) -> str:
    """
    Name under which src is stored. Relative paths keep their layout so
    `src: service/api` lands at /app/service/api; '.' lands at /app itself.
    Absolute or escaping paths fall back to their base name.
    """
    raw = os.path.normpath(str(src))
    if os.path.isabs(raw) or raw == ".." or raw.startswith(".." + os.sep):
        return os.path.basename(os.path.abspath(raw))
    return "" if raw == "." else raw.replace(os.sep, "/")


def archive_path(src: str | Path, out: BinaryIO, exclude: Iterable[str | Path] = ()) -> int:
    """
    Write an uncompressed tar of src (file or directory tree) to out.

    Directories in exclude (and everything below them) are not archived;
    the artifact cache is usually one of them when src is the project root.

    Returns:
        number of entries written
    """
    src = Path(src)
    if not src.exists():
        raise FileNotFoundError(f"source path not found: {src}")

    prefix = _arc_root(src)
    skip = [Path(p).resolve() for p in exclude]
    count = 0
    with tarfile.open(fileobj=out, mode="w|", format=tarfile.PAX_FORMAT) as tar:
        for p in _iter_tree(src, skip):
            rel = p.relative_to(src).as_posix()
            name = posixpath.join(prefix, rel) if rel != "." else prefix
            if not name:
                continue  # '.' itself; /app already exists
            tar.add(str(p), arcname=name, recursive=False)
            count += 1
    return count


def _dir_info(name: str) -> tarfile.TarInfo:
    info = tarfile.TarInfo(name=name)
    info.type = tarfile.DIRTYPE
    info.mode = 0o755
    info.mtime = int(time.time())
    return info


def reroot(archive: BinaryIO, prefix: str, out: BinaryIO) -> List[str]:
    """
    Copy a tar stream to out with every entry moved under prefix.

    Parent directory entries for prefix are emitted first so the stream can
    be extracted at '/' of a container that lacks those directories.

    Returns:
        the rewritten entry names
    """
    prefix = _clean_member_name(prefix.strip("/"))
    names: List[str] = []

    with tarfile.open(fileobj=archive, mode="r|*") as src, \
            tarfile.open(fileobj=out, mode="w|", format=tarfile.PAX_FORMAT) as dst:
        parts = [p for p in prefix.split("/") if p]
        for i in range(1, len(parts) + 1):
            dst.addfile(_dir_info("/".join(parts[:i])))

        for member in src:
            rel = _clean_member_name(member.name)
            if not rel:
                continue
            info = copy.copy(member)
            info.name = posixpath.join(prefix, rel)
            # pax path records take priority over .name when written
            info.pax_headers = {
                k: v for k, v in member.pax_headers.items() if k not in ("path", "linkpath")
            }
            if member.islnk():
                info.linkname = posixpath.join(prefix, _clean_member_name(member.linkname))
            fileobj = src.extractfile(member) if member.isreg() else None
            dst.addfile(info, fileobj)
            names.append(info.name)
    return names


def extract_archive(archive: BinaryIO, base_dir: str | Path) -> List[str]:
    """
    Extract regular files and directories from a tar stream into base_dir.

    Links, devices and fifos are skipped. Any entry resolving outside
    base_dir raises ArchiveError before anything is written for it.

    Returns:
        absolute paths of the extracted files
    """
    base = os.path.abspath(str(base_dir))
    os.makedirs(base, exist_ok=True)
    written: List[str] = []

    try:
        with tarfile.open(fileobj=archive, mode="r|*") as tar:
            for member in tar:
                target = safe_join(base, member.name)
                if member.isdir():
                    os.makedirs(target, exist_ok=True)
                elif member.isreg():
                    os.makedirs(os.path.dirname(target), exist_ok=True)
                    data = tar.extractfile(member)
                    with open(target, "wb") as f:
                        shutil.copyfileobj(data, f)
                    os.chmod(target, member.mode & 0o777 or 0o644)
                    written.append(target)
    except tarfile.TarError as e:
        raise ArchiveError(f"could not read archive: {e}") from e
    return written
