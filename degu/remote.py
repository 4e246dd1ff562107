"""
Remote descriptor resolution.

Normalizes the raw (type, url, branch) strings coming from the environment
or the command line into a RemoteSpec. Pure: no network access happens here.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from urllib.parse import urlsplit, urlunsplit

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

ARCHIVE_SUFFIXES = (
    ".zip",
    ".tar",
    ".tar.gz",
    ".tgz",
    ".tar.bz2",
    ".tbz2",
    ".tar.xz",
    ".txz",
    ".tar.lzma",
    ".tar.z",
)


class RemoteKind(str, Enum):
    GIT = "git"
    SVN = "svn"
    ARCHIVE = "archive"
    NONE = "none"


_KIND_NAMES = {kind.value for kind in RemoteKind}


@dataclass(frozen=True)
class RemoteSpec:
    """Where and how the application codebase is fetched."""

    kind: RemoteKind
    url: str = ""
    branch: str = ""

    def sanitized(self) -> dict:
        """Descriptor safe to expose over the control API."""
        return {
            "type": self.kind.value,
            "url": mask_credentials(self.url),
            "branch": self.branch,
        }


def mask_credentials(url: str) -> str:
    """Replace user/password embedded in a URL with ``***``."""
    if not url or "://" not in url:
        # scp-like git syntax (git@host:path) carries no password
        return url
    parts = urlsplit(url)
    if "@" not in parts.netloc:
        return url
    host = parts.netloc.rsplit("@", 1)[1]
    return urlunsplit(parts._replace(netloc=f"***@{host}"))


def strip_query(url: str) -> str:
    return url.split("?", 1)[0].split("#", 1)[0]


def is_archive_url(url: str) -> bool:
    path = strip_query(url).lower()
    return path.endswith(ARCHIVE_SUFFIXES)


def has_scheme(token: str) -> bool:
    return "://" in token


def looks_like_url(token: str) -> bool:
    return has_scheme(token) or "@" in token or "." in token or "/" in token


def infer_kind(url: str) -> RemoteKind:
    """Guess the remote kind from the URL."""
    if is_archive_url(url):
        return RemoteKind.ARCHIVE
    if "svn" in url.lower():
        return RemoteKind.SVN
    return RemoteKind.GIT


def directory_has_content(path: Path) -> bool:
    path = Path(path)
    return path.is_dir() and any(path.iterdir())


def resolve_remote(type_hint: str, url: str, branch: str, app_dir: Path) -> RemoteSpec:
    """
    Resolve raw remote input into a RemoteSpec.

    ``degu <url>`` and ``degu <url> <branch>`` are accepted as shorthands:
    a URL-looking first token shifts into the url position.
    """
    type_hint = (type_hint or "").strip()
    url = (url or "").strip()
    branch = (branch or "").strip()

    if type_hint and not url and not branch:
        url, type_hint = type_hint, ""
        if not has_scheme(url):
            type_hint = RemoteKind.GIT.value
    elif type_hint and url and type_hint.lower() not in _KIND_NAMES and looks_like_url(type_hint):
        url, branch, type_hint = type_hint, url, ""

    if type_hint:
        try:
            kind = RemoteKind(type_hint.lower())
        except ValueError:
            raise ConfigurationError(f"Unsupported remote type {type_hint!r}")
    elif url:
        kind = infer_kind(url)
    else:
        kind = RemoteKind.NONE

    if kind is RemoteKind.NONE:
        if url:
            raise ConfigurationError("Remote type 'none' does not take a URL")
        if not directory_has_content(app_dir):
            raise ConfigurationError(f"No remote is set and {app_dir} is empty")
        logger.warning(f"No remote is set, starting from directory {app_dir}")
        return RemoteSpec(kind=RemoteKind.NONE)

    if not url:
        raise ConfigurationError(f"Remote type {kind.value!r} requires a URL")

    if kind is RemoteKind.GIT and not branch:
        branch = "master"

    return RemoteSpec(kind=kind, url=url, branch=branch)

