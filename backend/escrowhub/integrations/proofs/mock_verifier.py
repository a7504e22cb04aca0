from __future__ import annotations

from escrowhub.errors import PreconditionMissing
from escrowhub.integrations.proofs.base import ProofVerifier, looks_like_photo_url


class MockProofVerifier(ProofVerifier):
    name = "mock"

    def verify_photos(self, photo_urls: list[str]) -> list[str]:
        bad = [u for u in photo_urls if not looks_like_photo_url(u)]
        if bad:
            raise PreconditionMissing("Photo proof URLs must be absolute http(s) URLs", details={"invalid": bad})
        return list(photo_urls)
