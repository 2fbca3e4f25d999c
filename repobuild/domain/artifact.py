"""
Release artifact domain object for repobuild.

Artifact file names are reproducible from (product, platform, version):

    {ProductName}-{os}-{arch}-v{version}.{ext}
"""

import hashlib
import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from .platform import PlatformTarget, platform_by_name

SIDECAR_SUFFIX = ".json"

_NAME_RE = re.compile(
    r'^(?P<product>.+)-(?P<os>[a-z]+)-(?P<arch>[a-z0-9_]+)-v(?P<version>[^/\\]+?)\.(?P<ext>[a-z0-9]+)$'
)


def artifact_name(product: str, target: PlatformTarget, version: str) -> str:
    """Deterministic artifact file name for a product build."""
    if not product or '/' in product:
        raise ValueError(f"Invalid product name: {product!r}")
    version = version[1:] if version.startswith('v') else version
    return f"{product}-{target.os}-{target.arch}-v{version}.{target.artifact_extension}"


def parse_artifact_name(name: str) -> Tuple[str, PlatformTarget, str]:
    """
    Split an artifact file name into (product, platform, version).

    Raises:
        ValueError: name does not follow the naming scheme
        UnsupportedPlatform: the encoded platform is unknown
    """
    match = _NAME_RE.match(name)
    if not match:
        raise ValueError(f"Not a release artifact name: {name}")
    target = platform_by_name(f"{match['os']}-{match['arch']}")
    return match['product'], target, match['version']


def file_sha256(path: Path, chunk_size: int = 1024 * 1024) -> str:
    """Content hash of a file."""
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(chunk_size), b''):
            digest.update(chunk)
    return digest.hexdigest()


@dataclass(frozen=True)
class ReleaseArtifact:
    """
    One packaged build output for a single platform and version.

    Carries the fingerprints of the graph and pin snapshot it was built from
    so a release can verify that all platforms agree.
    """
    product: str
    platform: PlatformTarget
    version: str
    content_hash: str
    location: str
    graph_fingerprint: str = ""
    pins_fingerprint: str = ""

    @property
    def name(self) -> str:
        return artifact_name(self.product, self.platform, self.version)

    @property
    def path(self) -> Path:
        return Path(self.location)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'product': self.product,
            'platform': self.platform.name,
            'version': self.version,
            'content_hash': self.content_hash,
            'location': self.location,
            'graph_fingerprint': self.graph_fingerprint,
            'pins_fingerprint': self.pins_fingerprint,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ReleaseArtifact':
        return cls(
            product=data['product'],
            platform=platform_by_name(data['platform']),
            version=data['version'],
            content_hash=data['content_hash'],
            location=data['location'],
            graph_fingerprint=data.get('graph_fingerprint', ''),
            pins_fingerprint=data.get('pins_fingerprint', ''),
        )

    @classmethod
    def from_file(
        cls,
        path: Path,
        graph_fingerprint: str = "",
        pins_fingerprint: str = "",
    ) -> 'ReleaseArtifact':
        """Describe an artifact file on disk from its name and content."""
        path = Path(path)
        product, target, version = parse_artifact_name(path.name)
        return cls(
            product=product,
            platform=target,
            version=version,
            content_hash=file_sha256(path),
            location=str(path),
            graph_fingerprint=graph_fingerprint,
            pins_fingerprint=pins_fingerprint,
        )

    def write_sidecar(self) -> Path:
        """Write the JSON record next to the artifact file."""
        sidecar = Path(self.location + SIDECAR_SUFFIX)
        sidecar.write_text(json.dumps(self.to_dict(), indent=2) + '\n')
        return sidecar

    @classmethod
    def load_sidecar(cls, artifact_path: Path) -> Optional['ReleaseArtifact']:
        """Read the JSON record of an artifact file, if it has one."""
        sidecar = Path(str(artifact_path) + SIDECAR_SUFFIX)
        if not sidecar.exists():
            return None
        data = json.loads(sidecar.read_text())
        data['location'] = str(artifact_path)
        return cls.from_dict(data)

    def __str__(self) -> str:
        return self.name
