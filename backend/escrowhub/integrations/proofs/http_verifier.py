from __future__ import annotations

import requests

from escrowhub.errors import ExternalDependencyFailure, PreconditionMissing
from escrowhub.integrations.proofs.base import ProofVerifier, looks_like_photo_url


class HttpProofVerifier(ProofVerifier):
    """HEADs every photo on the upload store and requires an image response."""

    name = "http"

    def __init__(self, timeout_seconds: int = 5):
        self.timeout_seconds = timeout_seconds

    def verify_photos(self, photo_urls: list[str]) -> list[str]:
        missing = []
        for url in photo_urls:
            if not looks_like_photo_url(url):
                missing.append(url)
                continue
            try:
                r = requests.head(url, timeout=self.timeout_seconds, allow_redirects=True)
            except requests.RequestException as exc:
                raise ExternalDependencyFailure(f"Photo verification unavailable: {exc.__class__.__name__}") from exc
            if r.status_code >= 500:
                raise ExternalDependencyFailure(f"Photo store answered HTTP {r.status_code}")
            content_type = (r.headers.get("Content-Type") or "").lower()
            if r.status_code >= 400 or not content_type.startswith("image/"):
                missing.append(url)
        if missing:
            raise PreconditionMissing("Photo proof could not be verified", details={"invalid": missing})
        return list(photo_urls)
