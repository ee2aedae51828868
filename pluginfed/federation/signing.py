"""
Ed25519 signature verification for remote sources.

Public keys arrive PEM-wrapped or as bare base64, on one line or many. Both
forms reduce to the same 32 raw key bytes; SPKI/PKCS8 wrapping is dropped by
keeping the trailing 32 bytes of the decoded blob.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from typing import Any, Dict, Mapping, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric import ed25519

from pluginfed.utils.exceptions import MalformedKey, MalformedSignature

logger = logging.getLogger(__name__)

RAW_KEY_LENGTH = 32
SIGNATURE_LENGTH = 64

_PEM_ARMOR = re.compile(r'-----(BEGIN|END) [A-Z0-9 ]+-----')
_WHITESPACE = re.compile(r'\s+')

Encoded = Union[str, bytes]


def _b64decode(value: Encoded) -> bytes:
    if isinstance(value, bytes):
        value = value.decode('ascii')
    return base64.b64decode(_WHITESPACE.sub('', value), validate=True)


def decode_public_key(public_key: Encoded) -> bytes:
    """Decode a PEM or base64 public key to its 32 raw bytes.

    Args:
        public_key: PEM text or base64, single- or multi-line

    Returns:
        The raw Ed25519 key bytes

    Raises:
        MalformedKey: If the key does not decode to at least 32 bytes
    """
    try:
        text = public_key.decode('ascii') if isinstance(public_key, bytes) else public_key
        key_bytes = _b64decode(_PEM_ARMOR.sub('', text))
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise MalformedKey(f'Public key is not valid base64: {str(e)}') from e

    if len(key_bytes) < RAW_KEY_LENGTH:
        raise MalformedKey(
            f'Public key is too short: {len(key_bytes)} bytes',
            length=len(key_bytes)
        )
    return key_bytes[-RAW_KEY_LENGTH:]


def decode_signature(signature: Encoded) -> bytes:
    """Decode a base64 signature.

    Raises:
        MalformedSignature: If decoding fails or the result is not 64 bytes
    """
    try:
        sig_bytes = _b64decode(signature)
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise MalformedSignature(f'Signature is not valid base64: {str(e)}') from e

    if len(sig_bytes) != SIGNATURE_LENGTH:
        raise MalformedSignature(
            f'Invalid signature length: {len(sig_bytes)} bytes',
            length=len(sig_bytes)
        )
    return sig_bytes


def verify(message: bytes, signature: Encoded, public_key: Encoded) -> bool:
    """Verify an Ed25519 signature over ``message``.

    Args:
        message: The signed bytes
        signature: Base64 signature
        public_key: PEM or base64 public key

    Returns:
        True if the signature is valid, False on a mismatch

    Raises:
        MalformedKey: If the public key cannot be decoded
        MalformedSignature: If the signature cannot be decoded
    """
    key = ed25519.Ed25519PublicKey.from_public_bytes(decode_public_key(public_key))
    sig_bytes = decode_signature(signature)
    try:
        key.verify(sig_bytes, message)
        return True
    except InvalidSignature:
        return False


def canonical_plugin_bytes(plugin: Mapping[str, Any]) -> bytes:
    """Serialize the signed fields of a plugin descriptor.

    Only ``id``, ``name``, ``version`` and ``description`` are signed, in that
    order, with compact separators.
    """
    signed: Dict[str, Any] = {
        'id': plugin.get('id'),
        'name': plugin.get('name'),
        'version': plugin.get('version'),
        'description': plugin.get('description'),
    }
    return json.dumps(signed, separators=(',', ':'), ensure_ascii=False).encode('utf-8')


def verify_plugin_signature(plugin: Mapping[str, Any], signature: Encoded, public_key: Encoded) -> bool:
    """Verify a catalog-supplied plugin signature. Never raises."""
    try:
        return verify(canonical_plugin_bytes(plugin), signature, public_key)
    except (MalformedKey, MalformedSignature) as e:
        logger.warning(f'Plugin signature rejected: {e.message}', extra={'plugin_id': plugin.get('id')})
        return False
