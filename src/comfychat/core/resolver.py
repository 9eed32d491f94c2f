"""Backend address resolution and request authentication.

Users type the backend address by hand ("127.0.0.1:8188",
"https://my-pod.example.com/", ...).  Everything that talks to the backend
goes through :func:`resolve_base` first so that REST calls, artifact URLs
and the push channel all agree on one unambiguous base address.

All functions here are deterministic and perform no I/O.
"""

from __future__ import annotations

from urllib.parse import urlencode, urlsplit, urlunsplit

_SCHEMES = ("http://", "https://")


def resolve_base(host: str, secure_origin: bool = False) -> str:
    """Normalize a user-entered backend address into a base URL.

    Args:
        host: Address as typed by the user, with or without scheme.
        secure_origin: Whether the hosting origin was loaded over a secure
            scheme.  Scheme-less addresses then get ``https`` so requests
            are not blocked as mixed content.

    Returns:
        Base URL with an explicit scheme and no trailing slash.

    Examples:
        >>> resolve_base(" 127.0.0.1:8188/ ")
        'http://127.0.0.1:8188'
        >>> resolve_base("pod.example.com", secure_origin=True)
        'https://pod.example.com'
    """
    url = host.strip()
    if not url.startswith(_SCHEMES):
        scheme = "https" if secure_origin else "http"
        url = f"{scheme}://{url}"
    if url.endswith("/"):
        url = url[:-1]
    return url


def build_auth_headers(token: str | None) -> dict[str, str]:
    """Return a bearer ``Authorization`` header, or nothing without a token."""
    if token and token.strip():
        return {"Authorization": f"Bearer {token.strip()}"}
    return {}


def image_url(base_url: str, filename: str, subfolder: str = "", image_type: str = "output") -> str:
    """Build the ``/view`` retrieval address for an output artifact."""
    query = urlencode({"filename": filename, "subfolder": subfolder, "type": image_type})
    return f"{base_url}/view?{query}"


def websocket_url(base_url: str, client_id: str, token: str | None = None) -> str:
    """Build the push channel address for a resolved base URL.

    The push protocol has no header-based authentication, so the token
    travels as a query parameter.

    Args:
        base_url: Output of :func:`resolve_base`.
        client_id: Process-lifetime client session id.
        token: Optional bearer credential.

    Returns:
        ``ws://`` or ``wss://`` URL ending in ``/ws`` with the query attached.
    """
    parsed = urlsplit(base_url)
    scheme = "wss" if parsed.scheme == "https" else "ws"
    path = parsed.path.rstrip("/")
    params = {"clientId": client_id}
    if token and token.strip():
        params["token"] = token.strip()
    return urlunsplit((scheme, parsed.netloc, f"{path}/ws", urlencode(params), ""))
