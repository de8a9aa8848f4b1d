from .client import WebDAVClient, base_url_for

__all__ = ["WebDAVClient", "base_url_for"]
