"""Destination URIs for one transcoder process."""

from dataclasses import dataclass
from urllib.parse import urlsplit


def build_ingest_url(base: str, stream_key: str) -> str:
    return f"{base.rstrip('/')}/{stream_key}"


def redact_url(url: str) -> str:
    """Hide the stream key (last path segment) for logging."""
    parts = urlsplit(url)
    path, _, _ = parts.path.rpartition("/")
    return f"{parts.scheme}://{parts.netloc}{path}/******"


@dataclass(frozen=True)
class TranscodeTargetSet:
    """Ordered, de-duplicated destination URIs.

    Fixed for the lifetime of one transcoder process; changing destinations
    means stop and start again.
    """

    urls: tuple[str, ...]

    @classmethod
    def build(
        cls,
        ingest_base: str,
        stream_key: str | None,
        destinations: list[str] | None = None,
    ) -> "TranscodeTargetSet":
        urls: list[str] = []
        key = (stream_key or "").strip()
        if key:
            urls.append(build_ingest_url(ingest_base, key))
        for url in destinations or []:
            if isinstance(url, str) and url.strip() and url.strip() not in urls:
                urls.append(url.strip())
        return cls(urls=tuple(urls))

    @property
    def is_empty(self) -> bool:
        return not self.urls

    @property
    def is_fan_out(self) -> bool:
        return len(self.urls) > 1

    def redacted(self) -> list[str]:
        return [redact_url(url) for url in self.urls]

    def __len__(self) -> int:
        return len(self.urls)
