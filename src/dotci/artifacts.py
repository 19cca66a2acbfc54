# artifacts.py
from __future__ import annotations

import os
import posixpath
import tempfile
import uuid
from pathlib import Path
from typing import List, Optional, Sequence

from .archive import extract_archive, reroot, safe_join
from .config import ARTIFACTS_DIR, WORKING_DIR
from .deadline import Deadline
from .engine import ContainerEngine
from .errors import ArchiveError, ArtifactError, EngineCallError
from .store import KeyExistsError, KeyNotFoundError, MemStore

# ---------------------------------------------------------------------
# Artifact relay
# ---------------------------------------------------------------------
# Layout:
#   <artifacts_dir>/
#     artifacts-<uuid>.tar        one archive per published path
#     artifacts-<uuid>.tar.part   publish in progress (never swept)
#
# Bookkeeping lives in a MemStore owned by the run:
#   key ("artifacts-<uuid>.tar") -> directory the path was copied from
#
# A record is written before its archive gets its final name, so a sweep
# never sees an archive it cannot place.
# ---------------------------------------------------------------------

_PREFIX = "artifacts-"
_SUFFIX = ".tar"
_PARTIAL = ".part"


class ArtifactRelay:
    """
    Moves files out of finished containers into a local cache and back into
    fresh containers. Safe to share between concurrently running jobs.
    """

    def __init__(
        self,
        engine: ContainerEngine,
        root: str | Path = ARTIFACTS_DIR,
        store: Optional[MemStore[str]] = None,
        *,
        reset: bool = True,
    ):
        self.engine = engine
        self.root = Path(root).resolve()
        self.store: MemStore[str] = store if store is not None else MemStore()
        self.root.mkdir(parents=True, exist_ok=True)
        if reset:
            # artifacts never survive from one run to the next
            self.sweep()

    def archive_path(self, key: str) -> Path:
        return self.root / key.strip()

    def sweep(self) -> List[str]:
        """
        Delete archives left behind by earlier runs.

        Only files named like relay archives are removed; anything else in
        the directory belongs to someone else and is left alone.

        Returns:
            names of the removed files
        """
        removed: List[str] = []
        for p in self.root.glob(f"{_PREFIX}*"):
            if p.is_file() and not p.is_symlink() and p.name.endswith((_SUFFIX, _SUFFIX + _PARTIAL)):
                p.unlink()
                removed.append(p.name)
        return sorted(removed)

    # -- publish ------------------------------------------------------

    def publish(
        self,
        container_id: str,
        path: str,
        *,
        job: str = "",
        deadline: Optional[Deadline] = None,
    ) -> str:
        """
        Copy `path` out of the container into a new cache archive.

        Returns:
            the cache key of the new archive
        """
        key = f"{_PREFIX}{uuid.uuid4().hex}{_SUFFIX}"
        final = self.archive_path(key)
        partial = final.with_name(final.name + _PARTIAL)

        try:
            with open(partial, "xb") as f:
                self.engine.copy_from_container(container_id, path, f, deadline)
            if partial.stat().st_size == 0:
                raise ArtifactError(job=job, message=f"artifact {path} is empty or missing")
            self.store.set(key, posixpath.dirname(path.rstrip("/")) or "/")
            try:
                os.replace(partial, final)
            except OSError:
                self.store.delete(key)
                raise
        except EngineCallError as e:
            raise ArtifactError(
                job=job,
                message=f"could not copy artifact {path} from container",
                details={"container": container_id, "reason": e.reason},
            ) from e
        except (OSError, KeyExistsError) as e:
            raise ArtifactError(
                job=job,
                message=f"could not store artifact {path}",
                details={"reason": str(e)},
            ) from e
        finally:
            partial.unlink(missing_ok=True)

        return key

    # -- retrieve -----------------------------------------------------

    def published(self) -> List[Path]:
        """Finished archives, oldest first."""
        archives = [p for p in self.root.glob(f"{_PREFIX}*{_SUFFIX}") if p.is_file()]
        return sorted(archives, key=lambda p: (p.stat().st_mtime_ns, p.name))

    def retrieve(
        self,
        container_id: str,
        keys: Optional[Sequence[str]] = None,
        *,
        job: str = "",
        deadline: Optional[Deadline] = None,
    ) -> None:
        """
        Copy artifacts into the container at the directory they came from.

        With keys, exactly those archives are copied. Without keys every
        archive published so far is copied.
        """
        if keys:
            for key in keys:
                key = key.strip()
                try:
                    directory = self.store.get(key)
                except KeyNotFoundError as e:
                    raise ArtifactError(job=job, message=f"could not find original path for artifact {key}") from e
                self._inject(container_id, self.archive_path(key), directory, job=job, deadline=deadline)
            return

        for archive in self.published():
            try:
                directory = self.store.get(archive.name)
            except KeyNotFoundError as e:
                raise ArtifactError(job=job, message=f"could not get {archive.name} from artifact store") from e
            self._inject(container_id, archive, directory, job=job, deadline=deadline)

    def _inject(
        self,
        container_id: str,
        archive: Path,
        directory: str,
        *,
        job: str,
        deadline: Optional[Deadline],
    ) -> None:
        # re-rooting at '/' lets the copy create directories the fresh
        # container does not have yet
        try:
            with open(archive, "rb") as src, tempfile.TemporaryFile(prefix="dot-artifact-") as tmp:
                reroot(src, directory, tmp)
                tmp.seek(0)
                self.engine.copy_to_container(container_id, "/", tmp, deadline)
        except EngineCallError as e:
            raise ArtifactError(
                job=job,
                message=f"could not copy artifact {archive.name} to container",
                details={"container": container_id, "reason": e.reason},
            ) from e
        except (OSError, ArchiveError) as e:
            raise ArtifactError(
                job=job,
                message=f"could not open artifact {archive.name}",
                details={"reason": str(e)},
            ) from e

    # -- export -------------------------------------------------------

    def export(self, dest_dir: str | Path) -> List[str]:
        """
        Extract every published artifact under dest_dir, keeping its path
        relative to the job working directory (/app/out/x -> dest/out/x).

        Returns:
            the files written
        """
        written: List[str] = []
        for archive in self.published():
            try:
                directory = self.store.get(archive.name)
                if directory == WORKING_DIR or directory.startswith(WORKING_DIR + "/"):
                    rel = posixpath.relpath(directory, WORKING_DIR)
                else:
                    rel = directory.lstrip("/")
                base = safe_join(dest_dir, rel)
                with open(archive, "rb") as f:
                    written.extend(extract_archive(f, base))
            except (KeyNotFoundError, OSError, ArchiveError) as e:
                raise ArtifactError(
                    job="",
                    message=f"could not export artifact {archive.name}",
                    details={"reason": str(e)},
                ) from e
        return written
