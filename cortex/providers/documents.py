"""
Document providers for fusion file and url sources.

Both providers return plain text: HTML is reduced to its readable text,
anything that does not decode as text is refused.
"""

import ipaddress
import logging
import socket
from pathlib import Path
from urllib.parse import urlparse

import requests
from bs4 import BeautifulSoup

from .base import Document, DocumentProvider, get_registry

logger = logging.getLogger(__name__)

REMOTE_SCHEMES = ("http://", "https://")

# Suffixes we label specially; everything else is served as text/plain.
_SUFFIX_TYPES = {
    "text/markdown": (".md", ".markdown"),
    "text/x-rst": (".rst",),
    "text/html": (".html", ".htm"),
    "text/yaml": (".yaml", ".yml"),
    "application/json": (".json",),
    "application/toml": (".toml",),
    "application/xml": (".xml",),
    "text/x-python": (".py",),
    "text/javascript": (".js", ".jsx", ".mjs"),
    "text/typescript": (".ts", ".tsx"),
    "text/x-go": (".go",),
    "text/x-rust": (".rs",),
    "text/x-sql": (".sql",),
    "text/x-shellscript": (".sh", ".bash"),
}
SUFFIX_CONTENT_TYPES = {
    suffix: content_type
    for content_type, suffixes in _SUFFIX_TYPES.items()
    for suffix in suffixes
}


def extract_html_text(html_content: str) -> str:
    """Reduce an HTML page to its visible text, one phrase per line."""
    soup = BeautifulSoup(html_content, "html.parser")
    for element in soup(["script", "style"]):
        element.decompose()

    pieces = [
        piece.strip()
        for line in soup.get_text().splitlines()
        for piece in line.split("  ")
    ]
    return "\n".join(piece for piece in pieces if piece)


def _media_type(header: str | None) -> str:
    """Drop parameters such as charset from a Content-Type header."""
    return (header or "text/plain").partition(";")[0].strip() or "text/plain"


class FileDocumentProvider:
    """
    Reads local text files for `file` fusion sources.

    Takes plain paths or file:// URIs. A relative path is joined to
    `base_dir` when one is given. With `root` set, a path that resolves
    anywhere outside that directory is rejected.
    """

    MAX_FILE_SIZE = 1_000_000

    def __init__(
        self,
        max_size: int | None = None,
        root: str | Path | None = None,
        base_dir: str | Path | None = None,
    ):
        self.max_size = max_size or self.MAX_FILE_SIZE
        self.root = Path(root).expanduser().resolve() if root else None
        self.base_dir = Path(base_dir).expanduser() if base_dir else None

    def supports(self, uri: str) -> bool:
        return not uri.startswith(REMOTE_SCHEMES)

    def _locate(self, uri: str) -> Path:
        path = Path(uri.removeprefix("file://")).expanduser()
        if self.base_dir is not None and not path.is_absolute():
            path = self.base_dir / path
        path = path.resolve()

        if not path.is_file():
            problem = "is not a regular file" if path.exists() else "does not exist"
            raise IOError(f"{path} {problem}")
        if self.root is not None and not path.is_relative_to(self.root):
            raise IOError(f"Refusing path traversal to {path}, outside {self.root}")
        return path

    def fetch(self, uri: str) -> Document:
        path = self._locate(uri)
        info = path.stat()
        if info.st_size > self.max_size:
            raise IOError(
                f"{path.name} is too large to fuse "
                f"({info.st_size:,} bytes, max {self.max_size:,})"
            )

        try:
            content = path.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise IOError(f"{path.name} is not UTF-8 text") from e

        content_type = SUFFIX_CONTENT_TYPES.get(path.suffix.lower(), "text/plain")
        if content_type == "text/html":
            content = extract_html_text(content)

        return Document(
            uri=path.as_uri(),
            content=content,
            content_type=content_type,
            metadata={"name": path.name, "size": info.st_size, "modified": info.st_mtime},
        )


def _is_blocked_address(addr) -> bool:
    return any((
        addr.is_private, addr.is_loopback, addr.is_link_local,
        addr.is_reserved, addr.is_unspecified, addr.is_multicast,
    ))


class HttpDocumentProvider:
    """
    Fetches `url` fusion sources over HTTP(S).

    Every hop of a redirect chain is checked, so a public URL cannot
    bounce the request onto a loopback or cloud metadata address unless
    `allow_private` is set. Bodies are streamed and cut at `max_size`.
    """

    MAX_REDIRECTS = 5
    CHUNK_SIZE = 64 * 1024

    def __init__(self, timeout: float = 10, max_size: int = 2_000_000, allow_private: bool = False):
        self.timeout = timeout
        self.max_size = max_size
        self.allow_private = allow_private

    def supports(self, uri: str) -> bool:
        return uri.startswith(REMOTE_SCHEMES)

    @staticmethod
    def _is_private_url(uri: str) -> bool:
        """True when the URL's host is, or resolves to, a non-public address.

        The lookup here and the one requests makes are separate, so a
        hostile resolver can still answer differently the second time.
        """
        host = urlparse(uri).hostname
        if not host or host in ("localhost", "metadata.google.internal"):
            return True

        try:
            return _is_blocked_address(ipaddress.ip_address(host))
        except ValueError:
            pass  # a name, not a literal

        try:
            infos = socket.getaddrinfo(host, None)
        except socket.gaierror:
            return False  # unresolvable; requests reports the failure
        return any(_is_blocked_address(ipaddress.ip_address(info[4][0])) for info in infos)

    def _ensure_public(self, uri: str) -> None:
        if not self.allow_private and self._is_private_url(uri):
            raise IOError(f"Refusing to fetch private or internal address {uri}")

    def _open(self, uri: str) -> requests.Response:
        """GET with redirects followed by hand, checking each Location."""
        from .. import __version__

        target = uri
        for _ in range(self.MAX_REDIRECTS):
            resp = requests.get(
                target,
                timeout=self.timeout,
                headers={"User-Agent": f"cortex/{__version__}"},
                stream=True,
                allow_redirects=False,
            )
            if not resp.is_redirect:
                return resp
            target = resp.headers.get("Location", "")
            resp.close()
            if not target.startswith(REMOTE_SCHEMES):
                raise IOError(f"{uri} redirected to unsupported location {target!r}")
            self._ensure_public(target)
        raise IOError(f"{uri} redirected more than {self.MAX_REDIRECTS} times")

    def _read_body(self, resp: requests.Response) -> bytes:
        declared = resp.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > self.max_size:
            raise IOError(f"Response too large: {declared} bytes declared, max {self.max_size}")

        body = bytearray()
        for chunk in resp.iter_content(chunk_size=self.CHUNK_SIZE):
            body.extend(chunk)
            if len(body) >= self.max_size:
                logger.debug("Truncated response body at %d bytes", self.max_size)
                break
        return bytes(body[:self.max_size])

    def fetch(self, uri: str) -> Document:
        self._ensure_public(uri)
        try:
            with self._open(uri) as resp:
                resp.raise_for_status()
                text = self._read_body(resp).decode(resp.encoding or "utf-8", errors="replace")
                content_type = _media_type(resp.headers.get("content-type"))
                status = resp.status_code
        except requests.Timeout as e:
            raise TimeoutError(f"Timed out fetching {uri}") from e
        except requests.RequestException as e:
            raise IOError(f"Failed to fetch {uri}: {type(e).__name__}") from e

        if content_type == "text/html":
            text = extract_html_text(text)
        return Document(
            uri=uri,
            content=text,
            content_type=content_type,
            metadata={"status_code": status},
        )


class CompositeDocumentProvider:
    """
    Dispatches each URI to the first provider that claims it.

    The default chain is HTTP then file; keyword arguments configure the
    file provider (root, base_dir, max_size).
    """

    def __init__(self, providers: list[DocumentProvider] | None = None, **file_options):
        if providers is not None:
            self._providers = list(providers)
        else:
            self._providers = [HttpDocumentProvider(), FileDocumentProvider(**file_options)]

    def supports(self, uri: str) -> bool:
        return any(p.supports(uri) for p in self._providers)

    def fetch(self, uri: str) -> Document:
        provider = next((p for p in self._providers if p.supports(uri)), None)
        if provider is None:
            raise ValueError(f"No document provider handles {uri}")
        return provider.fetch(uri)

    def add_provider(self, provider: DocumentProvider) -> None:
        """Put a provider at the front of the chain."""
        self._providers.insert(0, provider)


_registry = get_registry()
_registry.register_document("file", FileDocumentProvider)
_registry.register_document("http", HttpDocumentProvider)
_registry.register_document("composite", CompositeDocumentProvider)
