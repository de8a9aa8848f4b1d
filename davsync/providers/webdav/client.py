from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from email.utils import parsedate_to_datetime
from typing import Any
from urllib.parse import quote, unquote, urlparse

import requests

from davsync.core.errors import (
    NotFoundError,
    RemoteError,
    TransientError,
    error_for_status,
)
from davsync.sync import paths
from davsync.sync.models import DIRECTORY, FILE, RemoteSnapshot, TreeEntry

DAV_NS = "{DAV:}"

PROPFIND_BODY = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<d:propfind xmlns:d="DAV:"><d:prop>'
    "<d:resourcetype/><d:getlastmodified/><d:getcontentlength/>"
    "</d:prop></d:propfind>"
)

logger = logging.getLogger("webdav")


def base_url_for(server: str, username: str, template: str = "remote.php/dav/files/{username}/") -> str:
    server_text = (server or "").strip().rstrip("/")
    if not server_text:
        raise ValueError("server_url_missing")
    suffix = template.format(username=quote(username or "", safe="")).strip("/")
    return f"{server_text}/{suffix}/" if suffix else f"{server_text}/"


def parse_http_date(value: str | None) -> int:
    """RFC 1123 `getlastmodified` value to epoch milliseconds (0 if unusable)."""
    if not value:
        return 0
    try:
        return int(parsedate_to_datetime(value.strip()).timestamp() * 1000)
    except (TypeError, ValueError, IndexError):
        return 0


class WebDAVClient:
    def __init__(self, base_url: str, username: str, password: str, timeout: int = 30,
                 session: requests.Session | None = None):
        self.base_url = base_url if base_url.endswith("/") else f"{base_url}/"
        self.base_path = unquote(urlparse(self.base_url).path)
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.auth = (username, password)

    def _url(self, path: str) -> str:
        return self.base_url + quote(paths.normalize(path), safe="/")

    def _request(self, method: str, path: str, ok: tuple[int, ...] = (), **kwargs: Any) -> requests.Response:
        url = kwargs.pop("url", None) or self._url(path)
        try:
            res = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientError(f"{method.lower()}_unreachable path=/{path} error={e}") from e
        except requests.RequestException as e:
            raise RemoteError(f"{method.lower()}_failed path=/{path} error={e}") from e

        if res.status_code >= 400 and res.status_code not in ok:
            detail = f"{method} /{paths.normalize(path)}"
            raise error_for_status(res.status_code, detail)
        return res

    def _href_to_key(self, href: str) -> str | None:
        raw = unquote(urlparse(href).path)
        if not raw.startswith(self.base_path):
            base = self.base_path.rstrip("/")
            if raw.rstrip("/") != base:
                return None
            return ""
        return paths.normalize(raw[len(self.base_path):])

    def _parse_multistatus(self, body: bytes) -> list[TreeEntry]:
        try:
            root = ET.fromstring(body)
        except ET.ParseError as e:
            raise RemoteError(f"propfind_invalid_xml: {e}") from e

        entries: list[TreeEntry] = []
        for response in root.findall(f"{DAV_NS}response"):
            href = response.findtext(f"{DAV_NS}href") or ""
            key = self._href_to_key(href)
            if key is None:
                continue
            prop = None
            for propstat in response.findall(f"{DAV_NS}propstat"):
                status = propstat.findtext(f"{DAV_NS}status") or ""
                if " 200 " in f"{status} ":
                    prop = propstat.find(f"{DAV_NS}prop")
                    break
            if prop is None:
                continue

            resourcetype = prop.find(f"{DAV_NS}resourcetype")
            is_dir = resourcetype is not None and resourcetype.find(f"{DAV_NS}collection") is not None
            size_text = prop.findtext(f"{DAV_NS}getcontentlength") or "0"
            try:
                size = int(size_text)
            except ValueError:
                size = 0
            entries.append(
                TreeEntry(
                    path=key,
                    kind=DIRECTORY if is_dir else FILE,
                    mtime_ms=parse_http_date(prop.findtext(f"{DAV_NS}getlastmodified")),
                    size=size,
                )
            )
        return entries

    def _propfind(self, path: str, depth: str) -> list[TreeEntry]:
        res = self._request(
            "PROPFIND",
            path,
            headers={"Depth": depth, "Content-Type": "application/xml; charset=utf-8"},
            data=PROPFIND_BODY.encode("utf-8"),
        )
        return self._parse_multistatus(res.content)

    def probe(self) -> None:
        self._propfind("", "1")

    def list_dir(self, path: str) -> list[TreeEntry]:
        key = paths.normalize(path)
        return [e for e in self._propfind(key, "1") if e.path != key]

    def list_tree(self) -> RemoteSnapshot:
        """Full snapshot from one Depth-1 listing per collection.

        Depth infinity is not used: SabreDAV (Nextcloud) answers it with a
        normal 207 that only covers the first level.
        """
        snapshot = RemoteSnapshot()
        stack = [""]
        while stack:
            current = stack.pop()
            for entry in self.list_dir(current):
                if entry.is_dir:
                    if entry.path in snapshot.dirs:
                        continue
                    snapshot.dirs.add(entry.path)
                    stack.append(entry.path)
                else:
                    snapshot.files[entry.path] = entry
        logger.debug("remote_tree_listed files=%s dirs=%s", len(snapshot.files), len(snapshot.dirs))
        return snapshot

    def stat(self, path: str) -> TreeEntry | None:
        key = paths.normalize(path)
        try:
            entries = self._propfind(key, "0")
        except NotFoundError:
            return None
        for entry in entries:
            if entry.path == key:
                return entry
        return entries[0] if entries else None

    def read(self, path: str) -> bytes:
        return self._request("GET", path).content

    def write(self, path: str, data: bytes) -> None:
        self._request("PUT", path, data=data, headers={"Content-Type": "application/octet-stream"})

    def mkdir(self, path: str) -> None:
        # 405: collection already exists
        self._request("MKCOL", path, ok=(405,))

    def delete(self, path: str) -> None:
        self._request("DELETE", path, ok=(404,))

    def copy(self, src: str, dst: str) -> None:
        self._request(
            "COPY",
            src,
            headers={"Destination": self._url(dst), "Overwrite": "F"},
        )
