"""
Release store.

Each release lives in ``<BASE_DIR>/releases/<id>`` where ``<id>`` is the
artifact's build timestamp. Releases are extracted into a hidden staging
directory and renamed into place, so a listing never shows a half-written
release. Slot aliases (``<BASE_DIR>/slots/a|b``) are symlinks onto releases.
"""

import enum
import logging
import os
import shutil
import tarfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, ValidationError, field_validator

from slotdeploy.errors import PruneError, StagingError
from slotdeploy.slots import Slot, slot_dir

logger = logging.getLogger(__name__)

META_FILE = "DEPLOY_META"

_META_KEYS = {
    "TIMESTAMP": "timestamp",
    "BUILD_MODE": "build_mode",
    "NODE_VERSION": "runtime_version",
    "RUNTIME_VERSION": "runtime_version",
    "PACKAGE_MANAGER": "package_manager",
    "GIT_COMMIT": "commit_hash",
}


class BuildMode(str, enum.Enum):
    STANDALONE = "standalone"  # self-contained runtime bundle
    REGULAR = "regular"  # source plus dependency manifest


class ReleaseMetadata(BaseModel):
    timestamp: str
    build_mode: BuildMode
    runtime_version: str = "unknown"
    package_manager: str = "unknown"
    commit_hash: str = "unknown"

    @field_validator("timestamp")
    @classmethod
    def _numeric(cls, v: str) -> str:
        if not v.isdigit():
            raise ValueError("must be a numeric timestamp or sequence")
        return v

    @classmethod
    def parse(cls, text: str) -> "ReleaseMetadata":
        fields = {}
        for line in text.splitlines():
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, _, value = line.partition("=")
            name = _META_KEYS.get(key.strip().upper())
            if name:
                fields[name] = value.strip().strip("'\"")
        return cls(**fields)


@dataclass(frozen=True)
class Release:
    id: str
    path: Path
    build_mode: BuildMode | None
    created_at: datetime
    metadata: ReleaseMetadata | None = None


def _sort_key(release_id: str) -> tuple[int, str]:
    return int(release_id), release_id


class ReleaseStore:
    def __init__(self, releases_dir: Path, slots_dir: Path, env_file: Path | None = None):
        self.releases_dir = Path(releases_dir)
        self.slots_dir = Path(slots_dir)
        self.env_file = Path(env_file) if env_file else None

    def ensure_layout(self) -> None:
        self.releases_dir.mkdir(parents=True, exist_ok=True)
        self.slots_dir.mkdir(parents=True, exist_ok=True)

    # ── Catalog ───────────────────────────────────────────────────

    def release_ids(self) -> list[str]:
        """Release ids, oldest first."""
        if not self.releases_dir.is_dir():
            return []
        ids = [
            p.name for p in self.releases_dir.iterdir()
            if p.is_dir() and not p.is_symlink() and p.name.isdigit()
        ]
        return sorted(ids, key=_sort_key)

    def get(self, release_id: str) -> Release:
        path = self.releases_dir / release_id
        if not path.is_dir():
            raise StagingError(f"Release not found: {release_id}")
        metadata = None
        meta_path = path / META_FILE
        if meta_path.is_file():
            try:
                metadata = ReleaseMetadata.parse(meta_path.read_text())
            except ValidationError:
                logger.warning(f"Release {release_id} has unreadable {META_FILE}")
        return Release(
            id=release_id,
            path=path,
            build_mode=metadata.build_mode if metadata else None,
            created_at=datetime.fromtimestamp(path.stat().st_mtime, timezone.utc),
            metadata=metadata,
        )

    def releases(self) -> list[Release]:
        return [self.get(rid) for rid in self.release_ids()]

    def latest(self) -> Release | None:
        ids = self.release_ids()
        return self.get(ids[-1]) if ids else None

    # ── Staging ───────────────────────────────────────────────────

    def read_metadata(self, artifact: Path) -> ReleaseMetadata:
        try:
            with tarfile.open(artifact, "r:*") as tar:
                member = None
                for name in (META_FILE, f"./{META_FILE}"):
                    try:
                        member = tar.getmember(name)
                        break
                    except KeyError:
                        continue
                if member is None or not member.isfile():
                    raise StagingError(f"{artifact.name}: missing {META_FILE}")
                text = tar.extractfile(member).read().decode("utf-8", "replace")
        except (tarfile.TarError, OSError) as e:
            raise StagingError(f"Cannot read artifact {artifact}: {e}") from e
        try:
            return ReleaseMetadata.parse(text)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise StagingError(f"{artifact.name}: malformed {META_FILE} ({problems})") from e

    def stage(self, artifact: Path) -> Release:
        artifact = Path(artifact)
        if not artifact.is_file():
            raise StagingError(f"Artifact not found: {artifact}")

        metadata = self.read_metadata(artifact)
        release_id = metadata.timestamp
        final = self.releases_dir / release_id

        if final.exists() or final.is_symlink():
            raise StagingError(f"Release {release_id} already exists; refusing to overwrite")
        latest_ids = self.release_ids()
        if latest_ids and _sort_key(release_id) <= _sort_key(latest_ids[-1]):
            raise StagingError(
                f"Release id {release_id} is not newer than {latest_ids[-1]}"
            )

        try:
            self.ensure_layout()
        except OSError as e:
            raise StagingError(f"Cannot create release directories: {e}") from e

        tmp = self.releases_dir / f".staging-{release_id}"
        try:
            if tmp.exists():
                shutil.rmtree(tmp)
            tmp.mkdir()
            with tarfile.open(artifact, "r:*") as tar:
                tar.extractall(tmp, filter="data")
            if self.env_file and self.env_file.is_file():
                shutil.copy2(self.env_file, tmp / ".env")
            os.rename(tmp, final)
        except (tarfile.TarError, OSError) as e:
            shutil.rmtree(tmp, ignore_errors=True)
            raise StagingError(f"Extraction of {artifact.name} failed: {e}") from e

        logger.info(
            f"  Staged release {release_id} ({metadata.build_mode.value}, "
            f"commit {metadata.commit_hash})",
            extra={"release": release_id},
        )
        return Release(
            id=release_id,
            path=final,
            build_mode=metadata.build_mode,
            created_at=datetime.now(timezone.utc),
            metadata=metadata,
        )

    # ── Slot binding ──────────────────────────────────────────────

    def bind(self, slot: Slot, release: Release) -> Path:
        """Point the slot's working-dir alias at ``release``."""
        self.ensure_layout()
        alias = slot_dir(self.slots_dir, slot)
        tmp = alias.with_name(f".{alias.name}.tmp-{os.getpid()}")
        if tmp.is_symlink() or tmp.exists():
            tmp.unlink()
        os.symlink(str(release.path), tmp)
        os.replace(tmp, alias)
        logger.info(f"  slot {slot} -> release {release.id}", extra={"slot": str(slot)})
        return alias

    def restore_binding(self, slot: Slot, release_id: str | None) -> None:
        """Re-point the slot alias at ``release_id``, or remove it when None."""
        if release_id is None:
            slot_dir(self.slots_dir, slot).unlink(missing_ok=True)
            return
        self.bind(slot, self.get(release_id))

    def bound_release_id(self, slot: Slot) -> str | None:
        alias = slot_dir(self.slots_dir, slot)
        try:
            target = Path(os.readlink(alias))
        except OSError:
            return None
        if not target.is_absolute():
            target = alias.parent / target
        if os.path.normpath(str(target.parent)) != os.path.normpath(str(self.releases_dir)):
            return None
        return target.name

    def protected_ids(self) -> set[str]:
        return {rid for rid in (self.bound_release_id(s) for s in Slot) if rid}

    # ── Retention ─────────────────────────────────────────────────

    def prune(self, keep: int, protected: set[str]) -> list[str]:
        """Delete releases beyond the ``keep`` newest, never touching ``protected``.

        Returns the removed ids. Raises PruneError after attempting every
        candidate if any deletion failed.
        """
        ids = self.release_ids()
        cutoff = ids[:-keep] if keep > 0 else ids
        removed, failures = [], []
        for rid in cutoff:
            if rid in protected:
                logger.info(f"  Keeping release {rid} (bound to a slot)")
                continue
            try:
                shutil.rmtree(self.releases_dir / rid)
                removed.append(rid)
                logger.info(f"  Pruned release {rid}", extra={"release": rid})
            except OSError as e:
                failures.append(f"{rid}: {e}")
        if failures:
            raise PruneError("Could not remove releases: " + "; ".join(failures))
        return removed
