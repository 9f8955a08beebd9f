"""Error taxonomy for the escrow engine.

Every error carries a message that is safe to show to the user who triggered it.
"""


class EscrowError(Exception):
    """Base class for all expected escrow failures."""


class ValidationError(EscrowError):
    """Bad address, amount, role conflict or malformed input. No state changed."""


class AuthorizationError(EscrowError):
    """Actor lacks the role required for the operation. No state changed."""


class NotFoundError(EscrowError):
    pass


class ConcurrencyConflict(EscrowError):
    """A conditional write found the record changed underneath it."""


class VenueUnavailable(EscrowError):
    pass


class ChainError(EscrowError):
    """RPC failure, nonce collision or a reverted transaction."""


class InsufficientContractBalance(ChainError):
    def __init__(self, contract_address, available_wei, required_wei):
        self.contract_address = contract_address
        self.available_wei = available_wei
        self.required_wei = required_wei
        super().__init__(
            f"Escrow contract {contract_address} holds {available_wei} units, "
            f"settlement needs {required_wei}."
        )


class VerificationTimeout(EscrowError):
    """Transaction was submitted but its receipt was not seen in time.

    Not a failure: the transaction may still land. Never resubmit on this.
    """

    def __init__(self, tx_hash, message=None):
        self.tx_hash = tx_hash
        super().__init__(message or f"Transaction {tx_hash} submitted but not yet confirmed.")


class NotificationError(EscrowError):
    pass
