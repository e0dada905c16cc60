import logging
import os
import posixpath
import tarfile
from pathlib import Path

from cloudreader_sync.errors import CodecError

logger = logging.getLogger(__name__)


def pack_bundle(bundle_dir, archive_path):
    """Write bundle_dir as a tar+gzip archive whose single top-level entry is the directory name."""
    bundle_dir = Path(bundle_dir)
    if not bundle_dir.is_dir():
        raise CodecError(f"Bundle directory missing: {bundle_dir}")
    try:
        with tarfile.open(archive_path, "w:gz") as tar:
            tar.add(str(bundle_dir), arcname=bundle_dir.name)
    except (OSError, tarfile.TarError) as e:
        raise CodecError(f"Failed to pack {bundle_dir.name}: {e}") from e


def _check_member(member: tarfile.TarInfo):
    name = member.name.replace("\\", "/")
    if name.startswith("/") or (len(name) > 1 and name[1] == ":"):
        raise CodecError(f"Absolute archive member rejected: {member.name}")
    if ".." in posixpath.normpath(name).split("/"):
        raise CodecError(f"Archive member escapes extraction root: {member.name}")
    if member.issym() or member.islnk():
        raise CodecError(f"Link archive member rejected: {member.name}")
    if not (member.isfile() or member.isdir()):
        raise CodecError(f"Special archive member rejected: {member.name}")


def unpack_bundle(archive_path, dest_dir) -> Path:
    """
    Extract a bundle archive into dest_dir and return the extracted bundle directory.

    Every member is validated before anything is written. An archive with a
    single top-level directory yields that directory; otherwise dest_dir itself
    holds the bundle contents.
    """
    dest_dir = Path(dest_dir)
    try:
        with tarfile.open(archive_path, "r:gz") as tar:
            members = tar.getmembers()
            if not members:
                raise CodecError("Bundle archive is empty")
            for member in members:
                _check_member(member)
            tar.extractall(str(dest_dir), members=members, filter="data")
    except CodecError:
        raise
    except (OSError, EOFError, tarfile.TarError) as e:
        raise CodecError(f"Failed to unpack bundle archive: {e}") from e

    top_level = {posixpath.normpath(m.name.replace("\\", "/")).split("/")[0] for m in members}
    top_level.discard(".")
    if len(top_level) == 1:
        candidate = dest_dir / top_level.pop()
        if candidate.is_dir():
            return candidate
    logger.debug(f"Bundle archive has no single top-level directory, using {dest_dir}")
    return dest_dir


def archive_size(archive_path) -> int:
    try:
        return os.path.getsize(archive_path)
    except OSError:
        return 0
