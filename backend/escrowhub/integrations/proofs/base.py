from __future__ import annotations

from urllib.parse import urlparse


class ProofVerifier:
    """Checks that photo proofs exist before a custody change is accepted.

    Implementations raise PreconditionMissing for unusable proofs and
    ExternalDependencyFailure when the check itself cannot be performed.
    """

    name = "unknown"

    def verify_photos(self, photo_urls: list[str]) -> list[str]:
        raise NotImplementedError


def looks_like_photo_url(url: str) -> bool:
    parsed = urlparse((url or "").strip())
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)
