"""Download, verify and cache the rust-silk codec binary.

Install flow for one (base URL, version, platform, arch):
1. Resolve the release asset for the platform; unsupported platforms stop here
2. Resolve the version (``latest`` follows the releases redirect to a tag)
3. Download the archive, verify its sha256, extract it
4. Copy the binary into ``<install_root>/<folder>/`` and write install.json
5. For ``latest`` installs, remove sibling version folders

Concurrent requests for the same install share one attempt. Any failure is
logged and reported as ``None`` so callers fall back to other codecs.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import platform
import re
import shutil
import sys
import tarfile
import tempfile
import zipfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import unquote

import httpx

from gewe_bridge.config import GeweAccountConfig
from gewe_bridge.installer.singleflight import SingleFlight
from gewe_bridge.locking import exclusive_lock
from gewe_bridge.media.process import run_command
from gewe_bridge.models import AuditEvent, AuditEventType, RiskLevel, RustSilkInstall

if TYPE_CHECKING:
    from gewe_bridge.audit.logger import AuditLogger

logger = logging.getLogger(__name__)

DEFAULT_SILK_VERSION = "latest"
DEFAULT_SILK_BASE_URL = "https://github.com/Wangnov/rust-silk/releases/download"
DOWNLOAD_TIMEOUT_SECONDS = 120.0
EXTRACT_TIMEOUT_SECONDS = 60.0
INSTALL_MARKER = "install.json"
LOCK_FILE = ".install.lock"

_SHA256_LINE = re.compile(r"^([a-f0-9]{64})\s+\*?(.+)$", re.IGNORECASE)
_SHA256_BARE = re.compile(r"^[a-f0-9]{64}$", re.IGNORECASE)
_REPO_URL = re.compile(
    r"^(https?://github\.com/[^/]+/[^/]+)(?:/releases/download)?$", re.IGNORECASE,
)
_TAG_IN_URL = re.compile(r"/tag/([^/?#]+)")


class RustSilkInstallError(Exception):
    """Raised inside an install attempt; never escapes ``ensure``."""


@dataclass(frozen=True)
class RustSilkAsset:
    name: str
    archive: str  # "tar.xz" | "zip"
    binary: str


@dataclass(frozen=True)
class ResolvedVersion:
    tag: str
    folder: str
    is_latest: bool
    resolved_tag: str | None = None


_ASSETS: dict[tuple[str, str], RustSilkAsset] = {
    ("darwin", "arm64"): RustSilkAsset(
        "rust-silk-aarch64-apple-darwin.tar.xz", "tar.xz", "rust-silk",
    ),
    ("darwin", "x64"): RustSilkAsset(
        "rust-silk-x86_64-apple-darwin.tar.xz", "tar.xz", "rust-silk",
    ),
    ("linux", "arm64"): RustSilkAsset(
        "rust-silk-aarch64-unknown-linux-gnu.tar.xz", "tar.xz", "rust-silk",
    ),
    ("linux", "x64"): RustSilkAsset(
        "rust-silk-x86_64-unknown-linux-gnu.tar.xz", "tar.xz", "rust-silk",
    ),
    ("win32", "x64"): RustSilkAsset(
        "rust-silk-x86_64-pc-windows-msvc.zip", "zip", "rust-silk.exe",
    ),
}

_ARCH_ALIASES = {
    "x64": "x64",
    "amd64": "x64",
    "x86_64": "x64",
    "arm64": "arm64",
    "aarch64": "arm64",
}


def current_platform() -> tuple[str, str]:
    name = "win32" if sys.platform.startswith("win") else sys.platform
    if name.startswith("linux"):
        name = "linux"
    return name, platform.machine().lower()


def resolve_rust_silk_asset(platform_name: str, arch: str) -> RustSilkAsset | None:
    """Release asset for a platform/arch pair, or None when unsupported."""
    normalized = _ARCH_ALIASES.get(arch.lower())
    if normalized is None:
        return None
    return _ASSETS.get((platform_name.lower(), normalized))


def normalize_version(version: str) -> tuple[str, str]:
    """Return (tag, folder): the tag carries a ``v`` prefix, the folder none."""
    trimmed = version.strip()
    if trimmed.startswith("v"):
        return trimmed, trimmed[1:]
    return f"v{trimmed}", trimmed


def derive_repo_url(base_url: str) -> str | None:
    match = _REPO_URL.match(base_url.rstrip("/"))
    return match.group(1) if match else None


def parse_checksum(contents: str, asset_name: str) -> str | None:
    """Find ``asset_name`` in a ``<sha256>  [*]<name>`` manifest."""
    for line in contents.splitlines():
        match = _SHA256_LINE.match(line.strip())
        if match and match.group(2).strip() == asset_name:
            return match.group(1).lower()
    return None


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def find_binary(root: Path, file_name: str) -> Path | None:
    for candidate in sorted(root.rglob(file_name)):
        if candidate.is_file():
            return candidate
    return None


@contextmanager
def install_lock(install_root: Path) -> Iterator[None]:
    """Exclusive lock on the install root, held across processes."""
    install_root.mkdir(parents=True, exist_ok=True)
    with exclusive_lock(install_root / LOCK_FILE):
        yield


def cleanup_old_versions(install_root: Path, keep_folder: str) -> list[str]:
    """Remove every version folder except ``keep_folder``. Caller holds the lock."""
    removed: list[str] = []
    if not install_root.is_dir():
        return removed
    for entry in install_root.iterdir():
        if entry.is_dir() and entry.name != keep_folder:
            shutil.rmtree(entry, ignore_errors=True)
            removed.append(entry.name)
    return removed


def _extract_native(archive_path: Path, dest: Path, archive_type: str) -> None:
    if archive_type == "zip":
        with zipfile.ZipFile(archive_path) as zf:
            zf.extractall(dest)
    else:
        with tarfile.open(archive_path, "r:xz") as tar:
            tar.extractall(dest, filter="data")


class RustSilkInstaller:
    """Per-account entry point to the cached rust-silk binary."""

    def __init__(
        self,
        config: GeweAccountConfig,
        transport: httpx.AsyncBaseTransport | None = None,
        platform_name: str | None = None,
        arch: str | None = None,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self._config = config
        self._transport = transport
        detected_platform, detected_arch = current_platform()
        self._platform = platform_name or detected_platform
        self._arch = arch or detected_arch
        self._audit = audit_logger
        self._installs: SingleFlight[str | None] = SingleFlight()
        self._latest_tags: SingleFlight[str | None] = SingleFlight()

    @property
    def base_url(self) -> str:
        return ((self._config.silk_base_url or "").strip() or DEFAULT_SILK_BASE_URL).rstrip("/")

    @property
    def install_root(self) -> Path:
        custom = (self._config.silk_install_dir or "").strip()
        if custom:
            return Path(custom).expanduser()
        return self._config.state_path / "tools" / "rust-silk"

    def _client(self, timeout: float = DOWNLOAD_TIMEOUT_SECONDS) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self._transport, follow_redirects=True, timeout=timeout,
        )

    async def ensure(self) -> str | None:
        """Path of an installed rust-silk binary, or None when unavailable."""
        if not self._config.silk_auto_download:
            return None
        asset = resolve_rust_silk_asset(self._platform, self._arch)
        if asset is None:
            logger.debug("No rust-silk build for %s/%s", self._platform, self._arch)
            return None

        base_url = self.base_url
        version = (self._config.silk_version or "").strip() or DEFAULT_SILK_VERSION
        resolved = await self.resolve_version(version, base_url)
        key = "|".join(
            [base_url, resolved.tag, resolved.folder, asset.name, self._platform, self._arch],
        )
        return await self._installs.do(
            key, lambda: self._install(asset, base_url, resolved),
        )

    async def resolve_version(self, version: str, base_url: str) -> ResolvedVersion:
        if not version or version == "latest":
            latest = await self._latest_tags.do(
                base_url, lambda: self.resolve_latest_tag(base_url),
            )
            if latest:
                folder = latest[1:] if latest.startswith("v") else latest
                return ResolvedVersion(
                    tag=latest, folder=folder, is_latest=True, resolved_tag=latest,
                )
            # not cached: a later call retries discovery
            self._latest_tags.forget(base_url)
            return ResolvedVersion(tag="latest", folder="latest", is_latest=True)
        tag, folder = normalize_version(version)
        return ResolvedVersion(tag=tag, folder=folder, is_latest=False)

    async def resolve_latest_tag(self, base_url: str) -> str | None:
        """Follow ``<repo>/releases/latest`` and read the tag from the final URL."""
        repo_url = derive_repo_url(base_url)
        if repo_url is None:
            return None
        try:
            async with self._client() as client:
                resp = await client.get(f"{repo_url}/releases/latest")
        except httpx.HTTPError as e:
            logger.warning("rust-silk latest tag lookup failed: %s", e)
            return None
        match = _TAG_IN_URL.search(str(resp.url))
        return unquote(match.group(1)) if match else None

    async def resolve_checksum(
        self, client: httpx.AsyncClient, base_url: str, tag: str, asset_name: str,
    ) -> str | None:
        """Configured hash, then ``sha256.sum``, then ``<asset>.sha256``."""
        configured = (self._config.silk_sha256 or "").strip()
        if configured:
            return configured.lower()

        manifest = await self._fetch_text(client, f"{base_url}/{tag}/sha256.sum")
        if manifest:
            parsed = parse_checksum(manifest, asset_name)
            if parsed:
                return parsed

        asset_sum = await self._fetch_text(client, f"{base_url}/{tag}/{asset_name}.sha256")
        if asset_sum:
            parsed = parse_checksum(asset_sum, asset_name)
            if parsed:
                return parsed
            tokens = asset_sum.split()
            if tokens and _SHA256_BARE.match(tokens[0]):
                return tokens[0].lower()
        return None

    async def _fetch_text(self, client: httpx.AsyncClient, url: str) -> str:
        try:
            resp = await client.get(url)
        except httpx.HTTPError as e:
            logger.debug("Checksum fetch failed for %s: %s", url, e)
            return ""
        if resp.status_code >= 400:
            return ""
        return resp.text

    async def _download(self, client: httpx.AsyncClient, url: str, dest: Path) -> None:
        async with client.stream("GET", url) as resp:
            if resp.status_code >= 400:
                raise RustSilkInstallError(
                    f"download failed: {resp.status_code} {resp.reason_phrase}",
                )
            with dest.open("wb") as fh:
                async for chunk in resp.aiter_bytes():
                    fh.write(chunk)
        if dest.stat().st_size == 0:
            raise RustSilkInstallError("download failed: empty response body")

    async def _extract(self, archive_path: Path, dest: Path, asset: RustSilkAsset) -> None:
        try:
            await asyncio.wait_for(
                asyncio.to_thread(_extract_native, archive_path, dest, asset.archive),
                timeout=EXTRACT_TIMEOUT_SECONDS,
            )
            return
        except (
            tarfile.TarError, zipfile.BadZipFile, OSError, TypeError, asyncio.TimeoutError,
        ) as e:
            # TypeError: tarfile without extraction filters (3.11.0 to 3.11.3)
            logger.warning("Native extraction of %s failed, trying tar: %s", asset.name, e)

        flags = "-xf" if asset.archive == "zip" else "-xJf"
        result = await run_command(
            ["tar", flags, str(archive_path), "-C", str(dest)],
            timeout=EXTRACT_TIMEOUT_SECONDS,
        )
        if result.ok:
            return
        if asset.archive == "zip":
            result = await run_command(
                [
                    "powershell", "-Command",
                    f'Expand-Archive -Path "{archive_path}" -DestinationPath "{dest}" -Force',
                ],
                timeout=EXTRACT_TIMEOUT_SECONDS,
            )
            if result.ok:
                return
        raise RustSilkInstallError(f"extract failed: {result.describe_failure()}")

    def _place_binary(
        self,
        extracted: Path,
        asset: RustSilkAsset,
        resolved: ResolvedVersion,
    ) -> Path:
        install_root = self.install_root
        install_dir = install_root / resolved.folder
        binary_path = install_dir / asset.binary
        with install_lock(install_root):
            if not binary_path.exists():
                install_dir.mkdir(parents=True, exist_ok=True)
                staging = install_dir / f".{asset.binary}.partial"
                shutil.copy2(extracted, staging)
                os.chmod(staging, 0o755)
                staging.replace(binary_path)
                marker = RustSilkInstall(
                    version=resolved.folder,
                    tag=resolved.tag,
                    resolved_tag=resolved.resolved_tag,
                    asset=asset.name,
                )
                (install_dir / INSTALL_MARKER).write_text(marker.model_dump_json(indent=2))
            if resolved.is_latest and resolved.folder != "latest":
                cleanup_old_versions(install_root, resolved.folder)
        return binary_path

    def _reuse_existing(self, asset: RustSilkAsset, resolved: ResolvedVersion) -> Path | None:
        install_root = self.install_root
        binary_path = install_root / resolved.folder / asset.binary
        if not binary_path.exists():
            return None
        if resolved.is_latest and resolved.folder != "latest":
            with install_lock(install_root):
                cleanup_old_versions(install_root, resolved.folder)
        return binary_path

    async def _install(
        self, asset: RustSilkAsset, base_url: str, resolved: ResolvedVersion,
    ) -> str | None:
        try:
            existing = await asyncio.to_thread(self._reuse_existing, asset, resolved)
            if existing is not None:
                return str(existing)
            binary_path = await self._download_and_install(asset, base_url, resolved)
        except Exception as e:
            logger.warning("rust-silk install failed: %s", e)
            self._audit_install(asset, resolved, result="failure", error=str(e))
            return None
        logger.info("Installed rust-silk %s at %s", resolved.tag, binary_path)
        self._audit_install(asset, resolved, result="success")
        return str(binary_path)

    async def _download_and_install(
        self, asset: RustSilkAsset, base_url: str, resolved: ResolvedVersion,
    ) -> Path:
        with tempfile.TemporaryDirectory(prefix="gewe-silk-") as tmp:
            tmp_dir = Path(tmp)
            archive_path = tmp_dir / asset.name
            async with self._client() as client:
                await self._download(client, f"{base_url}/{resolved.tag}/{asset.name}", archive_path)
                expected = await self.resolve_checksum(client, base_url, resolved.tag, asset.name)

            if expected is None and not self._config.silk_allow_unverified:
                raise RustSilkInstallError("missing checksum for rust-silk download")
            if expected is not None:
                actual = await asyncio.to_thread(sha256_file, archive_path)
                if actual != expected:
                    raise RustSilkInstallError(
                        f"checksum mismatch for {asset.name}: expected {expected} got {actual}",
                    )

            extract_dir = tmp_dir / "extract"
            extract_dir.mkdir()
            await self._extract(archive_path, extract_dir, asset)
            extracted = find_binary(extract_dir, asset.binary)
            if extracted is None:
                raise RustSilkInstallError(f"rust-silk binary not found in {asset.name}")
            return await asyncio.to_thread(self._place_binary, extracted, asset, resolved)

    def _audit_install(
        self,
        asset: RustSilkAsset,
        resolved: ResolvedVersion,
        result: str,
        error: str | None = None,
    ) -> None:
        if not self._audit:
            return
        details: dict[str, object] = {"asset": asset.name, "tag": resolved.tag}
        if error:
            details["error"] = error
        self._audit.log(AuditEvent(
            event_type=AuditEventType.SILK_INSTALL,
            account_id=self._config.account_id,
            action="install_rust_silk",
            result=result,
            risk_level=RiskLevel.LOW if result == "success" else RiskLevel.MEDIUM,
            details=details,
        ))
