"""parcelfi.proofs

Ed25519 proofs over mirrored ledger envelopes.

Profile / invariants:
- `did:key` identifiers (Ed25519 only)
- Proof object uses a compact JSON form with a raw Ed25519 signature encoded as
  base64url (`jws` field; no JOSE header)
- Signing input is the canonical JSON bytes of the envelope with `proof`
  removed, so anyone holding the published bytes can re-derive it.
"""

from __future__ import annotations

import base64
import hmac
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from parcelfi.core import canonical_json_bytes

# Base58 implementation (no external deps)
B58_ALPHABET = b"123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
B58_MAP = {c: i for i, c in enumerate(B58_ALPHABET)}

PROOF_TYPE = "ParcelfiEd25519Signature2026"
PROOF_PURPOSE = "assertionMethod"


def b58decode(s: str) -> bytes:
    s_bytes = s.encode("ascii")
    num = 0
    for c in s_bytes:
        if c not in B58_MAP:
            raise ValueError("Invalid base58 character")
        num = num * 58 + B58_MAP[c]
    n_pad = 0
    for c in s_bytes:
        if c == B58_ALPHABET[0]:
            n_pad += 1
        else:
            break
    full = num.to_bytes((num.bit_length() + 7) // 8, "big") if num else b""
    return b"\x00" * n_pad + full


def b58encode(b: bytes) -> str:
    n_pad = 0
    for c in b:
        if c == 0:
            n_pad += 1
        else:
            break
    num = int.from_bytes(b, "big")
    out = bytearray()
    while num > 0:
        num, rem = divmod(num, 58)
        out.append(B58_ALPHABET[rem])
    out.extend(B58_ALPHABET[0] for _ in range(n_pad))
    out.reverse()
    return out.decode("ascii")


def b64url_encode(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).rstrip(b"=").decode("ascii")


def b64url_decode(s: str) -> bytes:
    pad = "=" * ((4 - len(s) % 4) % 4)
    return base64.urlsafe_b64decode((s + pad).encode("ascii"))


def signing_input(envelope: Dict[str, Any]) -> bytes:
    """Canonical signing input: the envelope without its `proof`."""
    return canonical_json_bytes({k: v for k, v in envelope.items() if k != "proof"})


# ---------------------------------------------------------------------------
# did:key (Ed25519)
# ---------------------------------------------------------------------------


def did_key_from_ed25519_public_key(pub: bytes) -> str:
    # multicodec 0xed01 + 32-byte pubkey (ed25519-pub)
    return "did:key:z" + b58encode(bytes([0xED, 0x01]) + pub)


def ed25519_public_key_from_did_key(did: str) -> Ed25519PublicKey:
    """Parse a `did:key` (Ed25519) and return a cryptography public key."""
    did = did.split("#", 1)[0]
    if not did.startswith("did:key:z"):
        raise ValueError("Only did:key:z... supported")

    decoded = b58decode(did[len("did:key:z"):])
    if not decoded.startswith(bytes([0xED, 0x01])):
        raise ValueError("did:key multicodec prefix not recognized for Ed25519")

    raw = decoded[2:]
    if len(raw) != 32:
        raise ValueError(f"Ed25519 public key must be 32 bytes, got {len(raw)}")
    return Ed25519PublicKey.from_public_bytes(raw)


@dataclass(frozen=True)
class SigningKey:
    """An Ed25519 private key bound to its did:key verification method."""
    private_key: Ed25519PrivateKey
    verification_method: str

    @classmethod
    def generate(cls, kid: str = "key-1") -> "SigningKey":
        priv = Ed25519PrivateKey.generate()
        pub = priv.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        return cls(priv, f"{did_key_from_ed25519_public_key(pub)}#{kid}")

    @classmethod
    def from_jwk(cls, jwk: Dict[str, Any]) -> "SigningKey":
        """Load an Ed25519 key from an OKP JWK (`d` private, `x` public)."""
        if jwk.get("kty") != "OKP" or jwk.get("crv") != "Ed25519":
            raise ValueError("Only OKP/Ed25519 JWK is supported")
        d = jwk.get("d")
        x = jwk.get("x")
        if not d or not x:
            raise ValueError("JWK must include both 'd' (private) and 'x' (public)")
        priv = Ed25519PrivateKey.from_private_bytes(b64url_decode(d))
        kid = str(jwk.get("kid") or "key-1")
        return cls(priv, f"{did_key_from_ed25519_public_key(b64url_decode(x))}#{kid}")


def _now_rfc3339() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def add_proof(
    envelope: Dict[str, Any],
    key: SigningKey,
    created: Optional[str] = None,
) -> Dict[str, Any]:
    """Attach an Ed25519 proof to the envelope (mutates and returns it)."""
    sig = key.private_key.sign(signing_input(envelope))
    envelope["proof"] = {
        "type": PROOF_TYPE,
        "created": created or _now_rfc3339(),
        "verificationMethod": key.verification_method,
        "proofPurpose": PROOF_PURPOSE,
        "jws": b64url_encode(sig),
    }
    return envelope


def verify_proof(envelope: Dict[str, Any]) -> Tuple[bool, str]:
    """Verify the envelope's proof.

    Returns (ok, error); error is empty when the signature checks out.
    """
    proof = envelope.get("proof")
    if not isinstance(proof, dict):
        return False, "missing proof"

    t = proof.get("type")
    if not isinstance(t, str) or not hmac.compare_digest(t, PROOF_TYPE):
        return False, f"Unsupported proof.type: {t!r}"

    try:
        pub = ed25519_public_key_from_did_key(str(proof.get("verificationMethod") or ""))
        sig = b64url_decode(str(proof.get("jws") or ""))
        if len(sig) != 64:
            return False, f"Ed25519 signature must be 64 bytes, got {len(sig)}"
        pub.verify(sig, signing_input(envelope))
    except Exception as ex:
        return False, str(ex) or type(ex).__name__
    return True, ""
