"""In-memory cache in front of a release image provider."""

from __future__ import annotations

import threading

from ... import metrics
from ...utils.errors import ReleaseLookupError
from .base import ReleaseImage, ReleaseImageProvider


class CachedReleaseImageProvider:
    """Cache successful lookups by pull spec for the lifetime of the instance.

    One lock is held across lookup-and-insert, so concurrent passes asking for
    the same pull spec trigger a single underlying lookup. Failures are not
    cached and entries are never evicted.
    """

    def __init__(self, provider: ReleaseImageProvider):
        self.provider = provider
        self._cache: dict[str, ReleaseImage] = {}
        self._lock = threading.Lock()

    def lookup(
        self,
        pull_spec: str,
        pull_secret_name: str | None = None,
        namespace: str | None = None,
    ) -> ReleaseImage:
        with self._lock:
            cached = self._cache.get(pull_spec)
            if cached is not None:
                metrics.release_lookup_total.labels(result="hit").inc()
                return cached
            try:
                release = self.provider.lookup(pull_spec, pull_secret_name, namespace)
            except ReleaseLookupError:
                metrics.release_lookup_total.labels(result="error").inc()
                raise
            metrics.release_lookup_total.labels(result="miss").inc()
            self._cache[pull_spec] = release
            return release

    def __contains__(self, pull_spec: str) -> bool:
        with self._lock:
            return pull_spec in self._cache
