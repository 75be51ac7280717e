"""
Merchant and user authorizations over mandate contents.

merchant_authorization
    ES256 JWT issued by the merchant. The ``cart_hash`` claim is the
    keccak hash of the canonical cart contents, so the token only
    verifies against the exact contents it was issued for. ``exp`` never
    outlives the cart's own expiry.

user_authorization
    EIP-712 signature by the user's key over the cart mandate hash and
    the payment mandate contents hash, wrapped together with the signer
    address as base64url canonical JSON. Re-pointing the payment at a
    different cart or replaying it with different contents breaks the
    signature.
"""

from __future__ import annotations

import base64
import binascii
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from eth_account import Account
from eth_account.messages import encode_typed_data

from .errors import MandateSignatureError, ValidationError
from .mandate import (
    CartContents,
    CartMandate,
    PaymentMandate,
    canonical_json_bytes,
    cart_contents_hash,
    cart_mandate_hash,
    format_timestamp,
    payment_contents_hash,
    utcnow,
)


MERCHANT_AUTH_ALGORITHM = "ES256"
MERCHANT_AUTH_AUDIENCE = "payment_processor"
DEFAULT_MERCHANT_AUTH_TTL_SECONDS = 30 * 60

USER_AUTH_DOMAIN_NAME = "Tandem AP2"
USER_AUTH_DOMAIN_VERSION = "1"


# ---------------------------------------------------------------------------
# Merchant authorization
# ---------------------------------------------------------------------------


def generate_merchant_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


def load_merchant_key(pem: str | bytes) -> ec.EllipticCurvePrivateKey:
    data = pem.encode("utf-8") if isinstance(pem, str) else pem
    key = serialization.load_pem_private_key(data, password=None)
    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise ValueError("Merchant signing key must be an EC private key")
    return key


def private_key_pem(key: ec.EllipticCurvePrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def public_key_pem(key: ec.EllipticCurvePrivateKey) -> str:
    return key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("utf-8")


class MerchantSigner:
    """Issues merchant authorizations for cart contents."""

    def __init__(
        self,
        merchant_name: str,
        private_key: Optional[ec.EllipticCurvePrivateKey] = None,
        key_id: Optional[str] = None,
        ttl_seconds: int = DEFAULT_MERCHANT_AUTH_TTL_SECONDS,
    ):
        if not merchant_name:
            raise ValueError("merchant_name is required")
        self.merchant_name = merchant_name
        self._private_key = private_key or generate_merchant_key()
        self.key_id = key_id or f"{merchant_name}-{uuid.uuid4().hex[:8]}"
        self._ttl_seconds = ttl_seconds

    @property
    def public_key(self) -> ec.EllipticCurvePublicKey:
        return self._private_key.public_key()

    def public_key_pem(self) -> str:
        return public_key_pem(self._private_key)

    def verifier(self) -> "MerchantAuthorizationVerifier":
        return MerchantAuthorizationVerifier({self.merchant_name: self.public_key})

    def sign(self, contents: CartContents, now: Optional[datetime] = None) -> CartMandate:
        """Return a CartMandate carrying a fresh authorization for ``contents``."""
        issued_at = now or utcnow()
        if contents.is_expired(issued_at):
            raise ValidationError(
                "CartContents.cart_expiry",
                f"cannot authorize a cart that expired at {format_timestamp(contents.cart_expiry)}",
            )
        iat = int(issued_at.timestamp())
        exp = min(iat + self._ttl_seconds, int(contents.cart_expiry.timestamp()))
        claims = {
            "iss": self.merchant_name,
            "sub": contents.id,
            "aud": MERCHANT_AUTH_AUDIENCE,
            "iat": iat,
            "exp": exp,
            "jti": uuid.uuid4().hex,
            "cart_hash": cart_contents_hash(contents),
        }
        token = jwt.encode(
            claims,
            self._private_key,
            algorithm=MERCHANT_AUTH_ALGORITHM,
            headers={"kid": self.key_id, "typ": "JWT"},
        )
        return CartMandate(contents=contents, merchant_authorization=token)


class MerchantAuthorizationVerifier:
    """Checks merchant authorizations against the contents actually presented."""

    def __init__(self, public_keys: Mapping[str, ec.EllipticCurvePublicKey], leeway_seconds: int = 0):
        self._public_keys = dict(public_keys)
        self._leeway = leeway_seconds

    def add_key(self, merchant_name: str, public_key: ec.EllipticCurvePublicKey | str) -> None:
        if isinstance(public_key, str):
            loaded = serialization.load_pem_public_key(public_key.encode("utf-8"))
            if not isinstance(loaded, ec.EllipticCurvePublicKey):
                raise ValueError("Merchant public key must be an EC key")
            public_key = loaded
        self._public_keys[merchant_name] = public_key

    def verify(self, cart_mandate: CartMandate, now: Optional[datetime] = None) -> dict[str, Any]:
        """Return the verified claims or raise ``MandateSignatureError``."""
        field = "CartMandate.merchant_authorization"
        contents = cart_mandate.contents
        if not cart_mandate.merchant_authorization:
            raise MandateSignatureError(field, "is missing")
        if contents.is_expired(now):
            raise ValidationError(
                "CartContents.cart_expiry",
                f"cart expired at {format_timestamp(contents.cart_expiry)}",
            )
        key = self._public_keys.get(contents.merchant_name)
        if key is None:
            raise MandateSignatureError(field, f"no key known for merchant '{contents.merchant_name}'")

        try:
            claims = jwt.decode(
                cart_mandate.merchant_authorization,
                key,
                algorithms=[MERCHANT_AUTH_ALGORITHM],
                audience=MERCHANT_AUTH_AUDIENCE,
                issuer=contents.merchant_name,
                leeway=self._leeway,
                options={"require": ["exp", "iat", "iss", "aud"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise MandateSignatureError(field, "authorization has expired") from e
        except jwt.InvalidTokenError as e:
            raise MandateSignatureError(field, f"invalid authorization: {e}") from e

        expected = cart_contents_hash(contents)
        if not hmac.compare_digest(str(claims.get("cart_hash", "")), expected):
            raise MandateSignatureError(field, "does not match the presented cart contents")
        if claims.get("sub") != contents.id:
            raise MandateSignatureError(field, "was issued for a different cart id")
        return claims


def verify_cart_mandate(
    cart_mandate: CartMandate,
    verifier: MerchantAuthorizationVerifier,
) -> tuple[bool, str]:
    """Verify a cart mandate's merchant authorization and validity window."""
    try:
        verifier.verify(cart_mandate)
    except ValidationError as e:
        return False, str(e)
    return True, "Valid cart mandate"


# ---------------------------------------------------------------------------
# User authorization
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UserAuthorization:
    """Decoded form of ``PaymentMandate.user_authorization``."""

    signer: str
    payment_mandate_id: str
    cart_hash: str
    payment_mandate_hash: str
    nonce: int
    signature: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "signer": self.signer,
            "payment_mandate_id": self.payment_mandate_id,
            "cart_hash": self.cart_hash,
            "payment_mandate_hash": self.payment_mandate_hash,
            "nonce": self.nonce,
            "signature": self.signature,
        }

    def encode(self) -> str:
        return base64.urlsafe_b64encode(canonical_json_bytes(self.to_dict())).rstrip(b"=").decode("ascii")

    @classmethod
    def decode(cls, token: str) -> UserAuthorization:
        field = "PaymentMandate.user_authorization"
        try:
            padded = token + "=" * (-len(token) % 4)
            raw = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
            return cls(
                signer=str(raw["signer"]),
                payment_mandate_id=str(raw["payment_mandate_id"]),
                cart_hash=str(raw["cart_hash"]),
                payment_mandate_hash=str(raw["payment_mandate_hash"]),
                nonce=int(raw["nonce"]),
                signature=str(raw["signature"]),
            )
        except (binascii.Error, UnicodeError, ValueError, KeyError, TypeError) as e:
            raise MandateSignatureError(field, "is not a well-formed authorization") from e


def build_user_authorization_typed_data(
    *,
    payment_mandate_id: str,
    cart_hash: str,
    payment_mandate_hash: str,
    nonce: int,
) -> dict[str, Any]:
    return {
        "domain": {
            "name": USER_AUTH_DOMAIN_NAME,
            "version": USER_AUTH_DOMAIN_VERSION,
        },
        "types": {
            "PaymentAuthorization": [
                {"name": "paymentMandateId", "type": "string"},
                {"name": "cartHash", "type": "bytes32"},
                {"name": "paymentMandateHash", "type": "bytes32"},
                {"name": "nonce", "type": "uint256"},
            ],
        },
        "primaryType": "PaymentAuthorization",
        "message": {
            "paymentMandateId": payment_mandate_id,
            "cartHash": cart_hash,
            "paymentMandateHash": payment_mandate_hash,
            "nonce": int(nonce),
        },
    }


def sign_payment_mandate(
    payment_mandate: PaymentMandate,
    cart_mandate: CartMandate,
    user_key: str,
    nonce: Optional[int] = None,
) -> PaymentMandate:
    """Sign a draft payment mandate for ``cart_mandate`` with the user's key."""
    account = Account.from_key(user_key)
    contents = payment_mandate.payment_mandate_contents
    if contents.payment_details_id != cart_mandate.contents.payment_request.details.id:
        raise ValidationError(
            "PaymentMandateContents.payment_details_id",
            "does not reference the cart being authorized",
        )

    auth_nonce = secrets.randbits(63) if nonce is None else int(nonce)
    cart_hash = cart_mandate_hash(cart_mandate)
    contents_hash = payment_contents_hash(contents)
    typed_data = build_user_authorization_typed_data(
        payment_mandate_id=contents.payment_mandate_id,
        cart_hash=cart_hash,
        payment_mandate_hash=contents_hash,
        nonce=auth_nonce,
    )
    signed = Account.sign_typed_data(
        account.key,
        typed_data["domain"],
        typed_data["types"],
        typed_data["message"],
    )
    authorization = UserAuthorization(
        signer=account.address,
        payment_mandate_id=contents.payment_mandate_id,
        cart_hash=cart_hash,
        payment_mandate_hash=contents_hash,
        nonce=auth_nonce,
        signature="0x" + _strip_0x(signed.signature.hex()),
    )
    return replace(payment_mandate, user_authorization=authorization.encode())


def verify_user_authorization(
    payment_mandate: PaymentMandate,
    cart_mandate: Optional[CartMandate] = None,
    trusted_signers: Optional[Iterable[str]] = None,
) -> UserAuthorization:
    """Verify the user's signature over a payment mandate.

    Always checks that the signature recovers to the embedded signer and
    that it covers these exact contents. With ``cart_mandate``, also
    checks that it was given for that cart. With ``trusted_signers``,
    the signer must be one of them.
    """
    field = "PaymentMandate.user_authorization"
    if not payment_mandate.user_authorization:
        raise MandateSignatureError(field, "User authorization not found in PaymentMandate.")

    auth = UserAuthorization.decode(payment_mandate.user_authorization)
    contents = payment_mandate.payment_mandate_contents

    if auth.payment_mandate_id != contents.payment_mandate_id:
        raise MandateSignatureError(field, "was issued for a different payment mandate id")
    if not hmac.compare_digest(auth.payment_mandate_hash, payment_contents_hash(contents)):
        raise MandateSignatureError(field, "does not match the presented payment mandate contents")

    typed_data = build_user_authorization_typed_data(
        payment_mandate_id=auth.payment_mandate_id,
        cart_hash=auth.cart_hash,
        payment_mandate_hash=auth.payment_mandate_hash,
        nonce=auth.nonce,
    )
    try:
        signable = encode_typed_data(
            typed_data["domain"],
            typed_data["types"],
            typed_data["message"],
        )
        recovered = Account.recover_message(
            signable,
            signature=bytes.fromhex(_strip_0x(auth.signature)),
        )
    except Exception as e:
        raise MandateSignatureError(field, f"signature verification failed: {e}") from e
    if recovered.lower() != auth.signer.lower():
        raise MandateSignatureError(field, f"signer mismatch: expected {auth.signer}, got {recovered}")

    if cart_mandate is not None:
        if not hmac.compare_digest(auth.cart_hash, cart_mandate_hash(cart_mandate)):
            raise MandateSignatureError(field, "does not bind the presented cart mandate")
        ensure_payment_matches_cart(payment_mandate, cart_mandate)

    if trusted_signers is not None:
        if auth.signer.lower() not in {s.lower() for s in trusted_signers}:
            raise MandateSignatureError(field, f"signer {auth.signer} is not trusted")
    return auth


def ensure_payment_matches_cart(payment_mandate: PaymentMandate, cart_mandate: CartMandate) -> None:
    contents = payment_mandate.payment_mandate_contents
    details = cart_mandate.contents.payment_request.details
    if contents.payment_details_id != details.id:
        raise ValidationError(
            "PaymentMandateContents.payment_details_id",
            f"'{contents.payment_details_id}' does not match cart request id '{details.id}'",
        )
    paying = contents.payment_details_total.amount
    owed = details.total.amount
    if paying.currency != owed.currency or paying.micros != owed.micros:
        raise ValidationError(
            "PaymentMandateContents.payment_details_total",
            f"{paying.value} {paying.currency} does not match cart total {owed.value} {owed.currency}",
        )


def _strip_0x(value: str) -> str:
    return value[2:] if value.startswith(("0x", "0X")) else value
