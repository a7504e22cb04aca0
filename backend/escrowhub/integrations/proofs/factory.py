from __future__ import annotations

from escrowhub.integrations.common import IntegrationMisconfiguredError
from escrowhub.integrations.proofs.base import ProofVerifier
from escrowhub.integrations.proofs.http_verifier import HttpProofVerifier
from escrowhub.integrations.proofs.mock_verifier import MockProofVerifier
from escrowhub.utils.config import env_int, env_str


def build_proof_verifier() -> ProofVerifier:
    mode = env_str("PROOF_VERIFIER", "mock").lower()
    if mode == "mock":
        return MockProofVerifier()
    if mode == "http":
        return HttpProofVerifier(timeout_seconds=env_int("PROOF_VERIFIER_TIMEOUT_SECONDS", 5, minimum=1, maximum=60))
    raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:proof_verifier={mode}")
