from eth_account import Account
from eth_account.signers.local import LocalAccount


class OracleSigner:
    """The single credential allowed to submit transactions to the external ledger."""

    def __init__(self, account: LocalAccount):
        self._account = account

    @classmethod
    def from_private_key(cls, private_key: str) -> "OracleSigner":
        if not private_key:
            raise ValueError("Oracle private key is required")
        return cls(Account.from_key(private_key))

    @classmethod
    def generate(cls) -> "OracleSigner":
        return cls(Account.create())

    @property
    def address(self) -> str:
        return self._account.address

    def sign_transaction(self, transaction: dict):
        return self._account.sign_transaction(transaction)

    def __repr__(self) -> str:
        return f"OracleSigner(address={self.address})"
