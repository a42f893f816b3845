import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Tuple

from ifilm_proxy.const import CREDENTIAL_PARAMS, UPSTREAM_MEDIA_PATH
from ifilm_proxy.errors import ManifestMismatchError

logger = logging.getLogger(__name__)

_SCHEME_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")
_ORIGIN_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://[^/]*")
_UPSTREAM_ITEM_PATTERN = re.compile(re.escape(UPSTREAM_MEDIA_PATH) + r"(?P<item>[^/]+)/(?P<suffix>.+)$")


class LineKind(str, Enum):
    PROXY_RELATIVE = "proxy_relative"
    PROXY_ABSOLUTE = "proxy_absolute"
    UPSTREAM_ABSOLUTE = "upstream_absolute"
    UPSTREAM_PATH = "upstream_path"
    BARE_RELATIVE = "bare_relative"
    OTHER_ABSOLUTE_PATH = "other_absolute_path"
    UNMATCHED = "unmatched"


@dataclass(frozen=True)
class PlaylistUrl:
    """A URL line split on its first '?'; the query part is kept byte for byte."""

    raw: str
    path: str
    query: str

    @classmethod
    def parse(cls, line: str) -> "PlaylistUrl":
        url = line.strip()
        path, _, query = url.partition("?")
        return cls(raw=url, path=path, query=query)

    @property
    def has_scheme(self) -> bool:
        return bool(_SCHEME_PATTERN.match(self.path))

    @property
    def origin_path(self) -> str:
        """The path without scheme and host."""
        return _ORIGIN_PATTERN.sub("", self.path, count=1)

    def with_path(self, path: str) -> str:
        return f"{path}?{self.query}" if self.query else path


@dataclass(frozen=True)
class RewriteRule:
    kind: LineKind
    matches: Callable[[PlaylistUrl], bool]
    rewrite: Callable[[PlaylistUrl], str]


def normalize_item_id(item_id: str) -> str:
    return item_id.replace("-", "").lower()


class M3U8Processor:
    def __init__(self, proxy_base: str, item_id: Optional[str] = None):
        """
        Initializes the M3U8Processor for one item's proxy base.

        Args:
            proxy_base (str): Proxy-relative base of the item, e.g. ``/api/media/stream/{item_id}``.
            item_id (str, optional): When given, lines addressing another item raise ManifestMismatchError.
        """
        self.proxy_base = proxy_base.rstrip("/")
        self.stream_root = self.proxy_base.rsplit("/", 1)[0] + "/"
        self._proxy_path = re.compile(re.escape(self.stream_root) + r"(?P<item>[^/]+)/")
        self.item_id = item_id
        self.rules: Tuple[RewriteRule, ...] = (
            RewriteRule(LineKind.PROXY_RELATIVE, self.is_proxy_relative, self.keep),
            RewriteRule(LineKind.PROXY_ABSOLUTE, self.is_proxy_absolute, self.strip_origin),
            RewriteRule(LineKind.UPSTREAM_ABSOLUTE, self.is_upstream_absolute, self.from_upstream_path),
            RewriteRule(LineKind.UPSTREAM_PATH, self.is_upstream_path, self.from_upstream_path),
            RewriteRule(LineKind.BARE_RELATIVE, self.is_bare_relative, self.prefix_proxy_base),
            RewriteRule(LineKind.OTHER_ABSOLUTE_PATH, self.is_other_absolute_path, self.flatten_path),
        )

    # Classification predicates, evaluated in the order of self.rules.

    def is_proxy_relative(self, url: PlaylistUrl) -> bool:
        return not url.has_scheme and self._proxy_path.match(url.path) is not None

    def is_proxy_absolute(self, url: PlaylistUrl) -> bool:
        return url.has_scheme and self._proxy_path.match(url.origin_path) is not None

    @staticmethod
    def is_upstream_absolute(url: PlaylistUrl) -> bool:
        return url.has_scheme and _UPSTREAM_ITEM_PATTERN.search(url.path) is not None

    @staticmethod
    def is_upstream_path(url: PlaylistUrl) -> bool:
        return url.path.startswith(UPSTREAM_MEDIA_PATH) and _UPSTREAM_ITEM_PATTERN.match(url.path) is not None

    @staticmethod
    def is_bare_relative(url: PlaylistUrl) -> bool:
        return bool(url.path) and not url.has_scheme and not url.path.startswith("/")

    @staticmethod
    def is_other_absolute_path(url: PlaylistUrl) -> bool:
        return url.path.startswith("/") and any(part for part in url.path.split("/"))

    # Rewrites

    @staticmethod
    def keep(url: PlaylistUrl) -> str:
        return url.raw

    def strip_origin(self, url: PlaylistUrl) -> str:
        return url.with_path(url.origin_path)

    def from_upstream_path(self, url: PlaylistUrl) -> str:
        suffix = _UPSTREAM_ITEM_PATTERN.search(url.path).group("suffix")
        return url.with_path(f"{self.proxy_base}/{suffix}")

    def prefix_proxy_base(self, url: PlaylistUrl) -> str:
        return url.with_path(f"{self.proxy_base}/{url.path}")

    def flatten_path(self, url: PlaylistUrl) -> str:
        parts = [part for part in url.path.split("/") if part]
        return url.with_path(f"{self.proxy_base}/{'/'.join(parts)}")

    def classify(self, line: str) -> LineKind:
        """
        Classify a playlist URL line.

        Args:
            line (str): A non-comment, non-blank playlist line.

        Returns:
            LineKind: The first matching rule's kind, or UNMATCHED.
        """
        url = PlaylistUrl.parse(line)
        for rule in self.rules:
            if rule.matches(url):
                return rule.kind
        return LineKind.UNMATCHED

    def referenced_item(self, kind: LineKind, url: PlaylistUrl) -> Optional[str]:
        """Return the item id a proxy or upstream line addresses, if it names one."""
        if kind in (LineKind.PROXY_RELATIVE, LineKind.PROXY_ABSOLUTE):
            path = url.origin_path if kind == LineKind.PROXY_ABSOLUTE else url.path
            return self._proxy_path.match(path).group("item")
        if kind in (LineKind.UPSTREAM_ABSOLUTE, LineKind.UPSTREAM_PATH):
            return _UPSTREAM_ITEM_PATTERN.search(url.path).group("item")
        return None

    def process_line(self, line: str) -> str:
        """
        Process a single line from the m3u8 content.

        Args:
            line (str): The line to process.

        Returns:
            str: The processed line.
        """
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            return line

        url = PlaylistUrl.parse(stripped)
        for rule in self.rules:
            if rule.matches(url):
                self._check_item(rule.kind, url)
                return rule.rewrite(url)

        logger.debug(f"Leaving unrecognised playlist line untouched: {stripped[:80]}")
        return line

    def process_m3u8(self, content: str) -> str:
        """
        Rewrite every URL line of a playlist so that it resolves through the proxy.

        Args:
            content (str): The m3u8 content to process.

        Returns:
            str: The processed m3u8 content.
        """
        return "\n".join(self.process_line(line) for line in content.split("\n"))

    def _check_item(self, kind: LineKind, url: PlaylistUrl) -> None:
        if not self.item_id:
            return
        referenced = self.referenced_item(kind, url)
        if referenced and normalize_item_id(referenced) != normalize_item_id(self.item_id):
            raise ManifestMismatchError(
                f"Playlist for item {self.item_id} references item {referenced}", upstream_status=200
            )


def rewrite_playlist(content: str, proxy_base: str) -> str:
    """
    Rewrite a playlist body relative to ``proxy_base``. Never fails on an unrecognised line.

    Args:
        content (str): The playlist text.
        proxy_base (str): Proxy-relative base of the item.

    Returns:
        str: The rewritten playlist text.
    """
    return M3U8Processor(proxy_base).process_m3u8(content)


def remove_credential_params(content: str) -> str:
    """
    Drop credential parameters from the query of every URL line; other parameters keep their exact bytes.

    Args:
        content (str): The playlist text.

    Returns:
        str: The playlist text without credentials on its URL lines.
    """

    def _strip(line: str) -> str:
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "?" not in stripped:
            return line
        path, _, query = stripped.partition("?")
        pieces = [p for p in query.split("&") if p.split("=", 1)[0].lower() not in CREDENTIAL_PARAMS]
        if len(pieces) == len(query.split("&")):
            return line
        kept = "&".join(p for p in pieces if p)
        return f"{path}?{kept}" if kept else path

    return "\n".join(_strip(line) for line in content.split("\n"))
