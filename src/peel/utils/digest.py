"""Digest calculation, validation and layer chain ids."""

import hashlib
import re
from typing import Union

# Regex pattern for valid digest format (algorithm:hex)
DIGEST_PATTERN = re.compile(r"^[a-z0-9]+:[a-f0-9]+$")

HEX_ID_PATTERN = re.compile(r"^[a-f0-9]{12,64}$")


def calculate_digest(data: Union[bytes, bytearray], algorithm: str = "sha256") -> str:
    """Calculate digest of data.

    Args:
        data: Data to hash
        algorithm: Hash algorithm (default: sha256)

    Returns:
        Digest string in format "algorithm:hex"

    Raises:
        ValueError: If algorithm is not supported
        ValueError: If data is not bytes-like
    """
    if not isinstance(data, (bytes, bytearray)):
        raise ValueError("Data must be bytes or bytearray")

    if algorithm not in hashlib.algorithms_available:
        raise ValueError(f"Unsupported algorithm: {algorithm}")

    hasher = hashlib.new(algorithm)
    hasher.update(data)
    return f"{algorithm}:{hasher.hexdigest()}"


def validate_digest(digest: str) -> bool:
    """Validate digest format.

    Args:
        digest: Digest string to validate

    Returns:
        True if valid digest format
    """
    if not isinstance(digest, str):
        return False

    if not DIGEST_PATTERN.match(digest):
        return False

    algorithm, _ = digest.split(":", 1)
    return algorithm in ["sha256", "sha512"]


def strip_algorithm(digest: str) -> str:
    """Return the hex part of "sha256:<hex>" (unchanged if there is no prefix)."""
    return digest.split(":", 1)[1] if ":" in digest else digest


def looks_like_image_id(reference: str) -> bool:
    """Check whether a reference is a (possibly short) hex image id or a digest."""
    return validate_digest(reference) or bool(HEX_ID_PATTERN.match(reference))


def compute_chain_ids(diff_ids: list[str]) -> list[str]:
    """Compute Docker layer chain ids from uncompressed layer digests.

    chain[0] = diff[0]
    chain[i] = sha256(chain[i-1] + " " + diff[i])

    Args:
        diff_ids: Layer diff ids, base layer first

    Returns:
        Chain ids in the same order
    """
    chain_ids: list[str] = []
    for diff_id in diff_ids:
        if not chain_ids:
            chain_ids.append(diff_id)
        else:
            chain_ids.append(
                calculate_digest(f"{chain_ids[-1]} {diff_id}".encode("utf-8"))
            )
    return chain_ids
