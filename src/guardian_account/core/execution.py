"""
Host execution environment.

``ExecutionContext`` stands in for the chain an account runs on. It provides:

- the block clock (monotonically non-decreasing)
- the chain id and the ambient transaction info
- call frames, so a contract can ask who called it
- a contract registry and ``call_contract`` routing
- per-phase atomicity: every contract's state is snapshotted before a phase
  and restored if the phase raises an ``AccountError``

Transactions run in two phases. A validate-phase failure rejects the
transaction (nothing persists, the error propagates). An execute-phase failure
reverts to the post-validate state and is reported in the receipt, so
validate-phase side effects such as escape attempt counters survive.
"""

from __future__ import annotations

import copy
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from guardian_account.core import config
from guardian_account.core.account_exceptions import (
    AccountError,
    ContractNotFoundError,
    InvalidTransactionNonceError,
    UnknownSelectorError,
)
from guardian_account.core.logging_config import short_id
from guardian_account.core.typed_signing import (
    compute_hash_on_elements,
    felt_sequence,
    get_selector_from_name,
)

logger = logging.getLogger(__name__)

INVOKE_PREFIX = config.short_string_to_int("invoke")
DEPLOY_ACCOUNT_PREFIX = config.short_string_to_int("deploy_account")
CONTRACT_ADDRESS_PREFIX = config.short_string_to_int("CONTRACT_ADDRESS")


@dataclass(frozen=True)
class Call:
    """A single call of a multicall: target, entry-point selector and felt calldata."""

    to: int
    selector: int
    calldata: Tuple[int, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "calldata", felt_sequence(self.calldata))

    @classmethod
    def to_entrypoint(cls, to: int, entrypoint: str, calldata: Sequence[int] = ()) -> "Call":
        return cls(to, get_selector_from_name(entrypoint), tuple(calldata))


def flatten_calls(calls: Sequence[Call]) -> List[int]:
    result = [len(calls)]
    for call in calls:
        result.extend([call.to, call.selector, len(call.calldata), *call.calldata])
    return result


@dataclass(frozen=True)
class ResourceBounds:
    max_amount: int = 0
    max_price_per_unit: int = 0

    @property
    def max_fee(self) -> int:
        return self.max_amount * self.max_price_per_unit


@dataclass(frozen=True)
class TxInfo:
    """Ambient information about the transaction being processed."""

    version: int
    account_contract_address: int
    transaction_hash: int
    signature: Tuple[int, ...]
    chain_id: int
    nonce: int = 0
    max_fee: int = 0
    l1_gas: ResourceBounds = ResourceBounds()
    l2_gas: ResourceBounds = ResourceBounds()
    tip: int = 0
    paymaster_data: Tuple[int, ...] = ()

    @property
    def max_resource_fee(self) -> int:
        return self.l1_gas.max_fee + self.l2_gas.max_fee


@dataclass(frozen=True)
class InvokeTransaction:
    """An invoke transaction before it is signed."""

    sender_address: int
    calls: Tuple[Call, ...]
    chain_id: int
    nonce: int = 0
    version: int = config.TX_V3
    max_fee: int = 0
    l1_gas: ResourceBounds = ResourceBounds()
    l2_gas: ResourceBounds = ResourceBounds()
    tip: int = 0

    @property
    def transaction_hash(self) -> int:
        return compute_hash_on_elements(
            [
                INVOKE_PREFIX,
                self.version,
                self.sender_address,
                compute_hash_on_elements(flatten_calls(self.calls)),
                self.max_fee,
                self.l1_gas.max_fee + self.l2_gas.max_fee,
                self.tip,
                self.chain_id,
                self.nonce,
            ]
        )

    def tx_info(self, signature: Sequence[int]) -> TxInfo:
        return TxInfo(
            version=self.version,
            account_contract_address=self.sender_address,
            transaction_hash=self.transaction_hash,
            signature=tuple(signature),
            chain_id=self.chain_id,
            nonce=self.nonce,
            max_fee=self.max_fee,
            l1_gas=self.l1_gas,
            l2_gas=self.l2_gas,
            tip=self.tip,
        )


class TransactionStatus(Enum):
    SUCCEEDED = "succeeded"
    REVERTED = "reverted"


@dataclass
class TransactionReceipt:
    transaction_hash: int
    status: TransactionStatus
    response: List[List[int]] = field(default_factory=list)
    revert_error: Optional[AccountError] = None

    @property
    def succeeded(self) -> bool:
        return self.status == TransactionStatus.SUCCEEDED

    @property
    def revert_reason(self) -> Optional[str]:
        return self.revert_error.code if self.revert_error else None


@dataclass(frozen=True)
class CallFrame:
    caller_address: int
    contract_address: int


class Contract:
    """
    Base class for contracts hosted by an ``ExecutionContext``.

    Subclasses keep all persistent data in ``self.state`` (snapshotted and
    restored by the host) and expose entry points through ``entrypoints()``.
    """

    def __init__(self, context: "ExecutionContext", address: Optional[int] = None) -> None:
        self.context = context
        self.state: Any = None
        self._dispatch: Optional[Dict[int, Callable[[Tuple[int, ...]], List[int]]]] = None
        self.address = context.register(self, address)

    def entrypoints(self) -> Dict[str, Callable[[Tuple[int, ...]], List[int]]]:
        return {}

    def call_entrypoint(self, selector: int, calldata: Sequence[int]) -> List[int]:
        if self._dispatch is None:
            self._dispatch = {
                get_selector_from_name(name): handler for name, handler in self.entrypoints().items()
            }
        handler = self._dispatch.get(selector)
        if handler is None:
            raise UnknownSelectorError(f"no entry point {hex(selector)} on {short_id(self.address)}")
        return handler(tuple(calldata))

    def snapshot(self) -> Any:
        return copy.deepcopy(self.state)

    def restore(self, snapshot: Any) -> None:
        self.state = snapshot


class ExecutionContext:
    """Chain stand-in: clock, frames, contract registry and atomic transactions."""

    def __init__(self, chain_id: int = config.CHAIN_ID, block_timestamp: int = 0) -> None:
        self.chain_id = chain_id
        self._block_timestamp = block_timestamp
        self._contracts: Dict[int, Contract] = {}
        self._frames: List[CallFrame] = []
        self._tx_info: Optional[TxInfo] = None
        self._tx_nonces: Dict[int, int] = {}
        self._address_counter = 0

    # ==================== Clock ====================

    def get_block_timestamp(self) -> int:
        return self._block_timestamp

    def set_block_timestamp(self, timestamp: int) -> None:
        if timestamp < self._block_timestamp:
            raise ValueError(
                f"Block timestamp cannot move backward ({timestamp} < {self._block_timestamp})"
            )
        self._block_timestamp = timestamp

    def advance_time(self, seconds: int) -> int:
        self.set_block_timestamp(self._block_timestamp + seconds)
        return self._block_timestamp

    # ==================== Registry ====================

    def register(self, contract: Contract, address: Optional[int] = None) -> int:
        if address is None:
            self._address_counter += 1
            address = compute_hash_on_elements(
                [CONTRACT_ADDRESS_PREFIX, self._address_counter, self.chain_id]
            ) % 2**251
        if address in self._contracts:
            raise ValueError(f"Address {short_id(address)} already in use")
        self._contracts[address] = contract
        return address

    def get_contract(self, address: int) -> Contract:
        contract = self._contracts.get(address)
        if contract is None:
            raise ContractNotFoundError(f"no contract at {short_id(address)}")
        return contract

    def get_tx_nonce(self, address: int) -> int:
        return self._tx_nonces.get(address, 0)

    # ==================== Frames ====================

    def get_caller_address(self) -> int:
        return self._frames[-1].caller_address if self._frames else config.PROTOCOL_CALLER

    def get_contract_address(self) -> int:
        if not self._frames:
            raise RuntimeError("No active call frame")
        return self._frames[-1].contract_address

    def get_tx_info(self) -> TxInfo:
        if self._tx_info is None:
            raise RuntimeError("No transaction in progress")
        return self._tx_info

    @contextmanager
    def frame(self, caller_address: int, contract_address: int) -> Iterator[CallFrame]:
        frame = CallFrame(caller_address, contract_address)
        self._frames.append(frame)
        try:
            yield frame
        finally:
            self._frames.pop()

    def call_contract(self, to: int, selector: int, calldata: Sequence[int]) -> List[int]:
        """Call ``to`` from the currently executing contract."""
        contract = self.get_contract(to)
        caller = self._frames[-1].contract_address if self._frames else config.PROTOCOL_CALLER
        with self.frame(caller, to):
            return contract.call_entrypoint(selector, calldata)

    # ==================== Atomicity ====================

    def _snapshot_all(self) -> Dict[int, Any]:
        return {address: contract.snapshot() for address, contract in self._contracts.items()}

    def _restore_all(self, snapshots: Dict[int, Any]) -> None:
        for address, snapshot in snapshots.items():
            self._contracts[address].restore(snapshot)

    # ==================== Transactions ====================

    def build_invoke(self, sender_address: int, calls: Sequence[Call], **kwargs: Any) -> InvokeTransaction:
        kwargs.setdefault("nonce", self.get_tx_nonce(sender_address))
        return InvokeTransaction(sender_address, tuple(calls), self.chain_id, **kwargs)

    def invoke(self, transaction: InvokeTransaction, signature: Sequence[int]) -> TransactionReceipt:
        """
        Process an invoke transaction.

        Raises:
            AccountError: If the validate phase rejects the transaction.

        Returns:
            Receipt; ``REVERTED`` with the error when the execute phase fails.
        """
        sender = transaction.sender_address
        account = self.get_contract(sender)
        if transaction.nonce != self.get_tx_nonce(sender):
            raise InvalidTransactionNonceError(
                f"expected nonce {self.get_tx_nonce(sender)}, got {transaction.nonce}"
            )

        calls = list(transaction.calls)
        tx_info = transaction.tx_info(signature)
        before_validate = self._snapshot_all()
        self._tx_info = tx_info
        try:
            try:
                with self.frame(config.PROTOCOL_CALLER, sender):
                    account.validate_transaction(calls)
            except AccountError as e:
                self._restore_all(before_validate)
                logger.warning(
                    "Transaction rejected in validation",
                    extra={
                        "event": "tx.rejected",
                        "account": short_id(sender),
                        "tx_hash": short_id(tx_info.transaction_hash),
                        "reason": e.code,
                    },
                )
                raise

            self._tx_nonces[sender] = transaction.nonce + 1
            after_validate = self._snapshot_all()
            try:
                with self.frame(config.PROTOCOL_CALLER, sender):
                    response = account.execute_transaction(calls)
            except AccountError as e:
                self._restore_all(after_validate)
                logger.warning(
                    "Transaction reverted",
                    extra={
                        "event": "tx.reverted",
                        "account": short_id(sender),
                        "tx_hash": short_id(tx_info.transaction_hash),
                        "reason": e.code,
                    },
                )
                return TransactionReceipt(tx_info.transaction_hash, TransactionStatus.REVERTED, revert_error=e)
        finally:
            self._tx_info = None

        logger.info(
            "Transaction executed",
            extra={
                "event": "tx.executed",
                "account": short_id(sender),
                "tx_hash": short_id(tx_info.transaction_hash),
                "calls": len(calls),
            },
        )
        return TransactionReceipt(tx_info.transaction_hash, TransactionStatus.SUCCEEDED, response=response)

    def deploy_account(
        self,
        address: int,
        signature: Sequence[int],
        class_hash: int = 0,
        salt: int = 0,
        version: int = config.TX_V3,
    ) -> int:
        """
        Run the deploy-phase validation of a freshly constructed account.

        The account is unregistered again when validation fails.

        Returns:
            The deploy transaction hash
        """
        account = self.get_contract(address)
        transaction_hash = compute_hash_on_elements(
            [DEPLOY_ACCOUNT_PREFIX, version, address, class_hash, salt, self.chain_id]
        )
        self._tx_info = TxInfo(
            version=version,
            account_contract_address=address,
            transaction_hash=transaction_hash,
            signature=tuple(signature),
            chain_id=self.chain_id,
        )
        try:
            with self.frame(config.PROTOCOL_CALLER, address):
                account.validate_deploy(class_hash, salt)
        except AccountError as e:
            del self._contracts[address]
            logger.warning(
                "Account deployment rejected",
                extra={"event": "tx.deploy_rejected", "account": short_id(address), "reason": e.code},
            )
            raise
        finally:
            self._tx_info = None
        self._tx_nonces[address] = 1
        return transaction_hash

    def call_as(self, caller_address: int, to: int, entrypoint: str, calldata: Sequence[int] = ()) -> List[int]:
        """
        Atomically call ``entrypoint`` on ``to`` on behalf of ``caller_address``.

        Models a call issued by another account's already-validated
        transaction (a relayer submitting an outside execution, an external
        guardian driving recovery). Any ``AccountError`` reverts every change
        and propagates.
        """
        snapshots = self._snapshot_all()
        outer_tx_info = self._tx_info
        if outer_tx_info is None:
            self._tx_info = TxInfo(
                version=config.TX_V3,
                account_contract_address=caller_address,
                transaction_hash=0,
                signature=(),
                chain_id=self.chain_id,
            )
        try:
            with self.frame(caller_address, to):
                return self.get_contract(to).call_entrypoint(get_selector_from_name(entrypoint), calldata)
        except AccountError:
            self._restore_all(snapshots)
            raise
        finally:
            self._tx_info = outer_tx_info
