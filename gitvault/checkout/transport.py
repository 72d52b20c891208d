"""Build dulwich transport clients for remote URLs."""

from __future__ import annotations

import re
from typing import Any

from dulwich.client import GitClient, get_transport_and_path

from gitvault.models.repository import Credential

_SCP_LIKE = re.compile(r"^(?:[^@/]+@)?[^/:]{2,}:(?!//)")


def is_http_url(url: str) -> bool:
    return url.startswith(("http://", "https://"))


def is_ssh_url(url: str) -> bool:
    """True for ``ssh://`` URLs and scp-style ``user@host:path`` locations."""
    if url.startswith(("ssh://", "git+ssh://", "ssh+git://")):
        return True
    return bool(_SCP_LIKE.match(url))


def client_kwargs(remote_url: str, credential: Credential | None) -> dict[str, Any]:
    """Keyword arguments for the dulwich client matching the URL scheme."""
    if credential is None:
        return {}
    kwargs: dict[str, Any] = {}
    if is_http_url(remote_url):
        if credential.username:
            kwargs["username"] = credential.username
        if credential.password:
            kwargs["password"] = credential.password
    elif is_ssh_url(remote_url):
        if credential.private_key is not None:
            kwargs["key_filename"] = str(credential.private_key)
    return kwargs


def open_transport(remote_url: str, credential: Credential | None) -> tuple[GitClient, str]:
    """Return a client and the path on the remote to fetch from."""
    return get_transport_and_path(remote_url, **client_kwargs(remote_url, credential))
