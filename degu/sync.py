"""
Codebase synchronization.

Materializes the application codebase in the app directory from a git
repository (clone, then fetch/reset/pull), an svn export, or a downloaded
archive. Every sync returns a revision token; the update poller compares it
with remote_revision() to decide whether anything changed.

Blocking: git, svn and downloads run synchronously. Callers on the event loop
go through resync(), which holds the working directory lock and runs the
sync in a worker thread.
"""

import asyncio
import hashlib
import logging
import os
import shutil
import subprocess
import tarfile
import tempfile
import zipfile
from datetime import datetime
from pathlib import Path
from urllib.parse import urlsplit

import httpx

from .config import Settings
from .errors import DownloadError, RemoteMismatchError, SyncError, UnsupportedArchiveError
from .remote import RemoteKind, RemoteSpec, mask_credentials, strip_query

logger = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT = httpx.Timeout(30.0, read=300.0)
FINGERPRINT_HEADERS = ("etag", "last-modified", "content-length")
TAR_SUFFIXES = (".tar", ".tar.gz", ".tgz", ".tar.bz2", ".tbz2", ".tar.xz", ".txz", ".tar.lzma", ".tar.z")


def describe(cmd: list[str]) -> str:
    """Command line for log output, with URL credentials masked."""
    return " ".join(mask_credentials(part) for part in cmd)


def run_command(cmd: list[str], cwd: Path = None, capture: bool = False, env: dict = None) -> str:
    """
    Run an external tool, raising SyncError on failure.

    Output goes to the supervisor's own stdout unless ``capture`` is set, in
    which case the stripped stdout is returned.
    """
    logger.debug(f"Running {describe(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            env=env,
            stdout=subprocess.PIPE if capture else None,
            text=True,
        )
    except OSError as e:
        raise SyncError(f"Cannot run {cmd[0]}: {e}") from e

    if result.returncode != 0:
        raise SyncError(f"{describe(cmd)} failed with status {result.returncode}")
    return (result.stdout or "").strip() if capture else ""


def fingerprint(url: str, headers) -> str:
    """
    Content fingerprint of an archive URL from its transfer metadata.

    Only validators the server exposes are used; the downloaded bytes are
    never hashed.
    """
    digest = hashlib.sha1(url.encode("utf-8"))
    for name in FINGERPRINT_HEADERS:
        digest.update(f"\n{name}:{headers.get(name, '')}".encode("utf-8"))
    return digest.hexdigest()


def archive_filename(url: str) -> str:
    name = Path(urlsplit(strip_query(url)).path).name
    return name or "archive"


def extract_archive(archive: Path, dest: Path) -> None:
    """Extract a zip or tar-family archive into ``dest``."""
    name = archive.name.lower()
    try:
        if name.endswith(".zip"):
            with zipfile.ZipFile(archive) as zf:
                for info in zf.infolist():
                    path = Path(zf.extract(info, dest))
                    mode = info.external_attr >> 16
                    if mode and not info.is_dir():
                        path.chmod(mode & 0o777)
        elif name.endswith(TAR_SUFFIXES):
            with tarfile.open(archive, "r:*") as tf:
                tf.extractall(dest, filter="data")
        else:
            raise UnsupportedArchiveError(f"Unsupported archive type: {archive.name}")
    except (zipfile.BadZipFile, tarfile.TarError, OSError) as e:
        raise SyncError(f"Cannot extract {archive.name}: {e}") from e


def find_archive_root(extract_dir: Path, branch: str, keep_hidden: str = "") -> Path:
    """
    Pick the directory to install from an extracted archive.

    An explicit branch names the inner directory. Without one, a single
    top-level non-hidden directory is used as the root.
    """
    if branch:
        root = extract_dir / branch
        if not root.is_dir():
            raise SyncError(f"Inner directory {branch!r} not found in archive")
        return root

    entries = [
        item
        for item in extract_dir.iterdir()
        if not item.name.startswith(".") or item.name == keep_hidden
    ]
    if len(entries) == 1 and entries[0].is_dir():
        logger.info(f"Detected inner directory as root: {entries[0].name}")
        return entries[0]
    return extract_dir


def install_directory(source: Path, target: Path, replace: bool = False) -> None:
    """Move ``source`` to ``target`` by renaming, swapping out an existing target if asked."""
    old = None
    if target.exists():
        if not replace:
            raise SyncError(f"{target} already exists")
        old = target.with_name(f".{target.name}.old-{os.getpid()}")
        os.rename(target, old)
    try:
        os.rename(source, target)
    except OSError as e:
        if old is not None:
            os.rename(old, target)
        raise SyncError(f"Cannot install app directory: {e}") from e
    if old is not None:
        shutil.rmtree(old, ignore_errors=True)


class Synchronizer:
    """Keeps the app directory in line with the remote."""

    def __init__(self, remote: RemoteSpec, settings: Settings, transport: httpx.BaseTransport = None):
        self.remote = remote
        self.app_dir = Path(settings.app_dir)
        self.degu_file_name = Path(settings.degu_file).name
        self.ssh_key_file = Path(settings.ssh_key_file)
        self.ssh_key_mode = settings.ssh_key_mode
        self.transport = transport
        self.revision: str = ""
        self.synced_at: datetime = None
        self.lock = asyncio.Lock()

    def sync(self, update: bool = False) -> str:
        """
        Fetch the codebase and return the applied revision token.

        ``update`` marks a re-sync of a running deployment; archives are then
        swapped in place instead of refusing an existing app directory.
        """
        kind = self.remote.kind
        if kind is not RemoteKind.NONE:
            logger.info(
                f"Downloading codebase from remote {kind.value} {mask_credentials(self.remote.url)} ..."
            )

        if kind is RemoteKind.GIT:
            token = self._sync_git()
        elif kind is RemoteKind.SVN:
            token = self._sync_svn()
        elif kind is RemoteKind.ARCHIVE:
            token = self._sync_archive(update)
        else:
            token = ""

        self.revision = token
        self.synced_at = datetime.now()
        if token:
            logger.info(f"Codebase at revision {token}")
        return token

    async def resync(self, update: bool = True) -> str:
        """Run sync() off the event loop while holding the working directory lock."""
        async with self.lock:
            worker = asyncio.ensure_future(asyncio.to_thread(self.sync, update))
            try:
                return await asyncio.shield(worker)
            except asyncio.CancelledError:
                # the thread cannot be interrupted; the directory stays locked until it is done
                await asyncio.gather(worker, return_exceptions=True)
                raise

    def remote_revision(self) -> str:
        """Ask the remote for its current token without touching the working tree."""
        kind = self.remote.kind
        if kind is RemoteKind.GIT:
            return self._git_remote_revision()
        if kind is RemoteKind.SVN:
            return self._svn_revision()
        if kind is RemoteKind.ARCHIVE:
            return self._archive_remote_revision()
        return ""

    # Git

    def _git_env(self) -> dict | None:
        if not self.ssh_key_file.exists() or "GIT_SSH_COMMAND" in os.environ:
            return None
        env = os.environ.copy()
        env["GIT_SSH_COMMAND"] = f"ssh -i {self.ssh_key_file} -o StrictHostKeyChecking=accept-new"
        return env

    def _sync_git(self) -> str:
        self.chmod_key_file()
        env = self._git_env()
        url, branch = self.remote.url, self.remote.branch

        if (self.app_dir / ".git").exists():
            origin = run_command(
                ["git", "config", "--get", "remote.origin.url"],
                cwd=self.app_dir,
                capture=True,
            )
            if origin and origin != url:
                raise RemoteMismatchError(
                    f"Remote of {self.app_dir} ({mask_credentials(origin)}) "
                    f"is different than requested ({mask_credentials(url)})"
                )
            run_command(["git", "fetch", "origin", branch], cwd=self.app_dir, env=env)
            run_command(["git", "reset", "--hard", f"origin/{branch}"], cwd=self.app_dir, env=env)
            run_command(["git", "pull"], cwd=self.app_dir, env=env)
        else:
            self.app_dir.parent.mkdir(parents=True, exist_ok=True)
            run_command(
                [
                    "git", "clone",
                    "--depth", "1",
                    "--recurse-submodules", "-j8",
                    "-b", branch,
                    "--single-branch",
                    url, str(self.app_dir),
                ],
                env=env,
            )

        try:
            return run_command(["git", "rev-parse", "@{upstream}"], cwd=self.app_dir, capture=True)
        except SyncError:
            # detached checkouts (tags) have no upstream
            return run_command(["git", "rev-parse", "HEAD"], cwd=self.app_dir, capture=True)

    def _git_remote_revision(self) -> str:
        branch = self.remote.branch
        output = run_command(
            ["git", "ls-remote", self.remote.url, branch],
            capture=True,
            env=self._git_env(),
        )
        refs = {}
        for line in output.splitlines():
            sha, _, ref = line.partition("\t")
            refs[ref.strip()] = sha.strip()

        for ref in (f"refs/heads/{branch}", f"refs/tags/{branch}^{{}}", f"refs/tags/{branch}"):
            if ref in refs:
                return refs[ref]
        if refs:
            return next(iter(refs.values()))
        raise SyncError(f"Branch {branch!r} not found on {mask_credentials(self.remote.url)}")

    # Subversion

    def _svn_url(self) -> str:
        url = self.remote.url
        if self.remote.branch:
            url = f"{url.rstrip('/')}/{self.remote.branch}"
        return url

    def _sync_svn(self) -> str:
        self.chmod_key_file()
        run_command(["svn", "export", "--force", self._svn_url(), str(self.app_dir)])
        return self._svn_revision()

    def _svn_revision(self) -> str:
        return run_command(
            ["svn", "info", "--show-item", "last-changed-revision", self._svn_url()],
            capture=True,
        )

    # Archives

    def _http_client(self) -> httpx.Client:
        return httpx.Client(
            transport=self.transport,
            follow_redirects=True,
            timeout=DOWNLOAD_TIMEOUT,
        )

    def _download(self, dest_dir: Path) -> tuple[Path, str]:
        """Download the archive into ``dest_dir``; returns (path, token)."""
        url = self.remote.url
        target = dest_dir / archive_filename(url)
        try:
            with self._http_client() as client:
                with client.stream("GET", url) as response:
                    response.raise_for_status()
                    with open(target, "wb") as f:
                        for chunk in response.iter_bytes():
                            f.write(chunk)
                    token = fingerprint(url, response.headers)
        except httpx.HTTPError as e:
            raise DownloadError(f"Downloading {mask_credentials(url)} failed: {e}") from e
        logger.info("Downloading complete")
        return target, token

    def _archive_remote_revision(self) -> str:
        url = self.remote.url
        try:
            with self._http_client() as client:
                response = client.head(url)
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise DownloadError(f"Checking {mask_credentials(url)} failed: {e}") from e
        return fingerprint(url, response.headers)

    def _sync_archive(self, update: bool) -> str:
        if self.app_dir.exists() and not update:
            raise SyncError(f"App directory {self.app_dir} already exists")

        self.app_dir.parent.mkdir(parents=True, exist_ok=True)
        # staged next to the app dir so installing is a rename on one filesystem
        staging = Path(tempfile.mkdtemp(prefix=f".{self.app_dir.name}.", dir=self.app_dir.parent))
        try:
            with tempfile.TemporaryDirectory(prefix="degu-") as download_dir:
                archive, token = self._download(Path(download_dir))
                extract_archive(archive, staging)

            root = find_archive_root(staging, self.remote.branch, keep_hidden=self.degu_file_name)
            install_directory(root, self.app_dir, replace=update)
        finally:
            shutil.rmtree(staging, ignore_errors=True)
        return token

    def chmod_key_file(self) -> bool:
        """Make sure the private key file has the mode ssh insists on."""
        if not self.ssh_key_file.exists():
            logger.info(f"No private key file {self.ssh_key_file}")
            return False
        try:
            self.ssh_key_file.chmod(self.ssh_key_mode)
            return True
        except OSError:
            logger.warning(
                f"Cannot chmod key file {self.ssh_key_file}, ensure it has mode "
                f"{self.ssh_key_mode:o}"
            )
            return False
