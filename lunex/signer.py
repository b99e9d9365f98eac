"""
Signer context: the explicit identity that signs a request.

Every operation that produces a signed transaction receives a
``SignerContext``; nothing in the package keeps a process-wide account.
"""

import os
import logging
from dataclasses import dataclass
from typing import Optional
from eth_account import Account
from eth_account.signers.local import LocalAccount

from lunex.errors import ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignerContext:
    name: str
    account: LocalAccount
    chain_id: Optional[int] = None

    @property
    def address(self) -> str:
        return self.account.address

    def sign(self, tx: dict):
        return self.account.sign_transaction(tx)

    def __repr__(self) -> str:
        return f"SignerContext(name={self.name!r}, address={self.address})"


def _from_key(name: str, key: str, chain_id: Optional[int]) -> SignerContext:
    try:
        account = Account.from_key(key.strip())
    except (ValueError, TypeError) as e:
        raise ValidationError(f"Signer {name!r} does not hold a valid private key") from e
    return SignerContext(name=name, account=account, chain_id=chain_id)


def resolve_signer(reference: Optional[str], chain_id: Optional[int] = None) -> SignerContext:
    """Resolve a signer reference.

    Accepted forms:
      env:VAR   private key read from environment variable VAR
      <path>    file whose content is the private key
      0x...     raw private key (discouraged outside local networks)
    """
    if not reference:
        raise ValidationError("No signer given (pass a signer or set LUNEX_SIGNER)")

    if reference.startswith("env:"):
        var = reference[4:]
        key = os.getenv(var)
        if not key:
            raise ValidationError(f"Environment variable {var} is not set")
        return _from_key(reference, key, chain_id)

    if os.path.isfile(reference):
        with open(reference, 'r') as f:
            return _from_key(reference, f.read(), chain_id)

    if reference.startswith("0x"):
        logger.warning("Using a raw private key from the command line; prefer env:VAR")
        signer = _from_key("raw-key", reference, chain_id)
        return signer

    raise ValidationError(f"Cannot resolve signer reference {reference!r}")
