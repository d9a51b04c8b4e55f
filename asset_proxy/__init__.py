"""Reverse proxy serving single-page application assets from an S3 bucket."""

from .app import create_app
from .fetcher import FetchRequest, ObjectDescriptor, ObjectFetcher
from .proxy import AssetProxy, FallbackController
from .routing import RouteRule, RouteTable, resolve
from .settings import ProxySettings

__all__ = [
    "AssetProxy",
    "FallbackController",
    "FetchRequest",
    "ObjectDescriptor",
    "ObjectFetcher",
    "ProxySettings",
    "RouteRule",
    "RouteTable",
    "create_app",
    "resolve",
]
