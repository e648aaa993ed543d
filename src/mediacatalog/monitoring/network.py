"""Detection of network-mounted library paths."""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import Tuple

import psutil

logger = logging.getLogger(__name__)

NETWORK_FILESYSTEMS = frozenset(
    {"nfs", "nfs4", "cifs", "smbfs", "smb3", "afpfs", "sshfs", "fuse.sshfs", "davfs", "webdav", "9p"}
)
UNIX_NETWORK_PREFIXES = ("/mnt/", "/Volumes/")
NETWORK_PATH_SEGMENTS = ("/smb/", "/nfs/")


@lru_cache(maxsize=1)
def network_mountpoints() -> Tuple[str, ...]:
    """Mount points backed by a network filesystem or a remote drive.

    On Windows psutil reports mapped network drives with a ``remote`` option.
    The result is cached for the life of the process.
    """
    try:
        partitions = psutil.disk_partitions(all=True)
    except (OSError, RuntimeError):
        logger.debug("Unable to enumerate disk partitions", exc_info=True)
        return ()

    mounts = []
    for partition in partitions:
        options = {opt.strip() for opt in partition.opts.split(",")}
        if partition.fstype.lower() in NETWORK_FILESYSTEMS or "remote" in options:
            mounts.append(partition.mountpoint.replace("\\", "/").rstrip("/"))
    return tuple(mounts)


def is_network_path(path: str) -> bool:
    """Guess whether ``path`` lives on a network filesystem.

    Native change notifications are unreliable on such paths, so the
    watcher polls them instead.
    """
    if path.startswith("\\\\") or path.startswith("//"):
        return True

    normalized = path.replace("\\", "/")
    if normalized.startswith(UNIX_NETWORK_PREFIXES):
        return True
    if any(segment in normalized for segment in NETWORK_PATH_SEGMENTS):
        return True

    candidate = normalized.lower() if os.name == "nt" else normalized
    for mount in network_mountpoints():
        if not mount:
            continue
        mount = mount.lower() if os.name == "nt" else mount
        if candidate == mount or candidate.startswith(mount + "/"):
            return True
    return False
