"""
Artifact installer for repobuild.

Installs a packaged release artifact into a target directory in three
steps: acquire the runtime (verify and unpack the archive into a staging
directory), materialize the component set, then finalize by writing the
install marker and swapping the staging directory into place.

The target is either left exactly as it was or fully replaced. Installing
the same artifact twice is a no-op.
"""

import json
import logging
import os
import shutil
import tempfile
import zipfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Sequence

from ..domain.artifact import ReleaseArtifact, file_sha256
from ..domain.errors import CorruptArtifact, IncompatiblePlatform, InstallError
from ..domain.pin import PinSet
from ..domain.platform import PlatformTarget, local_platform
from ..infra.file_store import write_json_atomic

logger = logging.getLogger(__name__)

INSTALL_MARKER = ".repobuild-install.json"
COMPONENTS_FILE = "components.json"

INSTALLED = "installed"
REPLACED = "replaced"
CURRENT = "current"


@dataclass(frozen=True)
class InstallResult:
    """Outcome of an install: installed, replaced or already current."""
    status: str
    target: Path
    artifact: ReleaseArtifact

    @property
    def changed(self) -> bool:
        return self.status != CURRENT

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': 'install',
            'status': self.status,
            'target': str(self.target),
            'artifact': self.artifact.name,
            'platform': self.artifact.platform.name,
            'version': self.artifact.version,
            'content_hash': self.artifact.content_hash,
        }


@contextmanager
def scoped_install_target(target: Path) -> Iterator[Path]:
    """
    Yield a staging directory that replaces ``target`` on success.

    On any error the staging directory is removed and ``target`` is left
    untouched. During the swap the previous target is kept as a backup and
    restored if the rename fails.
    """
    target = Path(target)
    target.parent.mkdir(parents=True, exist_ok=True)
    staging = Path(tempfile.mkdtemp(dir=target.parent, prefix=f".{target.name}.staging-"))
    try:
        yield staging
    except BaseException:
        shutil.rmtree(staging, ignore_errors=True)
        raise

    backup = None
    if target.exists():
        backup = Path(tempfile.mkdtemp(dir=target.parent, prefix=f".{target.name}.backup-"))
        os.rmdir(backup)
        os.replace(target, backup)
    try:
        os.replace(staging, target)
    except OSError as e:
        if backup is not None:
            os.replace(backup, target)
        shutil.rmtree(staging, ignore_errors=True)
        raise InstallError(f"Could not move installation into {target}: {e}")
    if backup is not None:
        shutil.rmtree(backup, ignore_errors=True)


def read_install_marker(target: Path) -> Optional[Dict[str, Any]]:
    """Install marker of a target directory, if it has a readable one."""
    marker = Path(target) / INSTALL_MARKER
    if not marker.is_file():
        return None
    try:
        return json.loads(marker.read_text())
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Ignoring unreadable install marker {marker}: {e}")
        return None


def check_replaceable(target: Path, marker: Optional[Dict[str, Any]]) -> None:
    """
    Refuse to replace anything but an empty directory or an earlier install.

    Raises:
        InstallError: target is a file, or a non-empty directory without an install marker
    """
    if not target.exists() or marker is not None:
        return
    if not target.is_dir():
        raise InstallError(f"Install target {target} exists and is not a directory")
    if any(target.iterdir()):
        raise InstallError(
            f"Install target {target} is not empty and holds no {INSTALL_MARKER}; "
            f"refusing to replace it"
        )


class Installer:
    """
    Install release artifacts on this machine.

    Example:
        installer = Installer()
        result = installer.install(artifact, artifact.path, Path("/opt/workbench"))
        print(result.status)    # installed | replaced | current
    """

    def __init__(self, platform: Optional[PlatformTarget] = None):
        self.platform = platform

    def _local_platform(self) -> PlatformTarget:
        return self.platform or local_platform()

    def install(
        self,
        artifact: ReleaseArtifact,
        archive_path: Optional[Path],
        target_dir: Path,
        components: Sequence[str] = (),
        pins: Optional[PinSet] = None,
    ) -> InstallResult:
        """
        Install an artifact into ``target_dir``.

        Raises:
            IncompatiblePlatform: artifact built for another platform
            CorruptArtifact: archive content does not match the artifact hash
            InstallError: target is not replaceable, or unpacking or the final swap failed
        """
        target = Path(target_dir).expanduser()
        archive = Path(archive_path) if archive_path else artifact.path

        local = self._local_platform()
        if artifact.platform.name != local.name:
            raise IncompatiblePlatform(artifact.platform.name, local.name)

        marker = read_install_marker(target)
        if marker and (
            marker.get('content_hash') == artifact.content_hash
            and marker.get('version') == artifact.version
            and marker.get('platform') == artifact.platform.name
        ):
            logger.info(f"{artifact.name} is already installed in {target}")
            return InstallResult(status=CURRENT, target=target, artifact=artifact)
        check_replaceable(target, marker)

        if not archive.is_file():
            raise CorruptArtifact(f"Artifact file not found: {archive}", platform=artifact.platform.name)
        actual = file_sha256(archive)
        if actual != artifact.content_hash:
            raise CorruptArtifact(
                f"{archive.name} hash {actual[:12]} does not match {artifact.content_hash[:12]}",
                platform=artifact.platform.name,
            )

        existed = marker is not None
        with scoped_install_target(target) as staging:
            self._acquire_runtime(archive, staging)
            self._materialize_components(staging, artifact, components, pins)
            self._finalize(staging, artifact)

        status = REPLACED if existed else INSTALLED
        logger.info(f"{status.capitalize()} {artifact.name} in {target}")
        return InstallResult(status=status, target=target, artifact=artifact)

    def _acquire_runtime(self, archive: Path, staging: Path) -> None:
        try:
            with zipfile.ZipFile(archive) as zf:
                root = staging.resolve()
                for member in zf.namelist():
                    destination = (staging / member).resolve()
                    if destination != root and root not in destination.parents:
                        raise CorruptArtifact(f"{archive.name} contains an unsafe path: {member}")
                zf.extractall(staging)
        except zipfile.BadZipFile as e:
            raise CorruptArtifact(f"{archive.name} is not a valid archive: {e}")

    def _materialize_components(
        self,
        staging: Path,
        artifact: ReleaseArtifact,
        components: Sequence[str],
        pins: Optional[PinSet],
    ) -> None:
        write_json_atomic(staging / COMPONENTS_FILE, {
            'product': artifact.product,
            'version': artifact.version,
            'platform': artifact.platform.name,
            'load_order': list(components),
            'pins': pins.to_dict() if pins is not None else {},
        })

    def _finalize(self, staging: Path, artifact: ReleaseArtifact) -> None:
        write_json_atomic(staging / INSTALL_MARKER, {
            'product': artifact.product,
            'version': artifact.version,
            'platform': artifact.platform.name,
            'content_hash': artifact.content_hash,
            'artifact': artifact.name,
        })
