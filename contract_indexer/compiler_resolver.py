"""
Compiler Resolver

Maps a pinned solc version string to the executable cached by py-solc-x.
Resolution never touches the network: binaries are fetched ahead of time by
:meth:`SolcResolver.download_all` (the ``download-solc`` command), and a
cache miss during indexing fails fast with :class:`MissingBinary`.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import solcx
from solcx.exceptions import SolcInstallationError, SolcNotInstalled, UnsupportedVersionError
from solcx.install import get_executable
from tqdm import tqdm

from .errors import AmbiguousVersion, MissingBinary

logger = logging.getLogger(__name__)

# Anything that looks like a constraint rather than a single release
_RANGE_CHARS = re.compile(r"[\^~<>=*|xX\s]")
_PINNED = re.compile(r"^(\d+)\.(\d+)\.(\d+)$")


def parse_version(version_str: str) -> Tuple[int, int, int]:
    """Parse a declared compiler version into ``(major, minor, patch)``.

    Accepts the forms found in verified-source metadata, e.g. ``0.8.20``,
    ``v0.8.20+commit.a1b79de6`` or ``v0.4.24-nightly.2018.5.16+commit.7f965c86``.
    Build metadata and pre-release tags are dropped.

    Raises:
        AmbiguousVersion: if the string is a range/constraint or unparseable.
    """
    if not version_str or not version_str.strip():
        raise AmbiguousVersion("Empty compiler version")

    raw = version_str.strip()
    version = raw[1:] if raw[:1] in ("v", "V") else raw
    version = version.split("+", 1)[0].split("-", 1)[0]

    if _RANGE_CHARS.search(version):
        raise AmbiguousVersion(f"Compiler version {raw!r} is a range, not a pinned release")

    match = _PINNED.match(version)
    if not match:
        raise AmbiguousVersion(f"Cannot parse compiler version {raw!r}")
    return int(match.group(1)), int(match.group(2)), int(match.group(3))


def normalize_version(version_str: str) -> str:
    """Normalize: ``'v0.8.20+commit.abc'`` -> ``'0.8.20'``."""
    return "%d.%d.%d" % parse_version(version_str)


@dataclass
class DownloadSummary:
    """Outcome of a ``download-solc`` run."""

    installed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.failed


class SolcResolver:
    """Resolve pinned solc versions to cached executables.

    Resolved paths are memoized per normalized version. During indexing the
    cache is only read, so worker threads share one resolver without locks.
    """

    def __init__(self, solc_dir: Optional[str] = None):
        self.solc_dir = Path(solc_dir) if solc_dir else None
        self._paths: Dict[str, Path] = {}

    def resolve(self, version: str) -> Path:
        """Return the solc executable for ``version``.

        Raises:
            AmbiguousVersion: ``version`` is not a single pinned release.
            MissingBinary: the release is not in the local cache.
        """
        pinned = normalize_version(version)
        cached = self._paths.get(pinned)
        if cached is not None:
            return cached

        try:
            path = Path(get_executable(pinned, solcx_binary_path=self.solc_dir))
        except (SolcNotInstalled, UnsupportedVersionError) as e:
            raise MissingBinary(
                f"solc {pinned} is not installed; run `download-solc` first ({e})"
            ) from e

        self._paths[pinned] = path
        return path

    def installed_versions(self) -> List[str]:
        """Return the installed solc versions as strings."""
        return [str(v) for v in solcx.get_installed_solc_versions(solcx_binary_path=self.solc_dir)]

    def download_all(self, versions: Optional[Iterable[str]] = None) -> DownloadSummary:
        """Install every requested (default: every installable) solc version.

        Already cached versions are skipped, so the operation is idempotent.
        Must not run while an indexing run is reading the same cache.
        """
        if versions is None:
            wanted = [str(v) for v in solcx.get_installable_solc_versions()]
        else:
            wanted = [normalize_version(v) for v in versions]

        installed = set(self.installed_versions())
        summary = DownloadSummary()

        for version in tqdm(wanted, desc="Downloading solc", unit="version"):
            if version in installed:
                summary.skipped.append(version)
                continue
            try:
                logger.info(f"Installing solc {version}...")
                solcx.install_solc(version, solcx_binary_path=self.solc_dir)
                summary.installed.append(version)
            except (SolcInstallationError, UnsupportedVersionError, OSError) as e:
                logger.warning(f"Failed to install solc {version}: {e}")
                summary.failed[version] = str(e)

        self._paths.clear()
        logger.info(
            f"solc download complete: {len(summary.installed)} installed, "
            f"{len(summary.skipped)} already cached, {len(summary.failed)} failed"
        )
        return summary
