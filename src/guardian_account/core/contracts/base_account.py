"""
Behaviour shared by every account contract.

``BaseAccount`` owns the transaction phases, multicall execution, outside
execution wiring, signer linking and the entry-point plumbing. Subclasses
supply the authorization policy through ``assert_valid_calls_and_signature``
and ``is_valid_signature``, and keep ``registry``, ``outside_nonces`` and
``events`` in their state.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Sequence, Tuple

from guardian_account.core import config
from guardian_account.core.account_exceptions import (
    AccountError,
    ForbiddenCallError,
    MulticallFailedError,
)
from guardian_account.core.contracts.guards import (
    assert_correct_tx_version,
    assert_no_self_call,
    assert_only_protocol,
    assert_only_self,
)
from guardian_account.core.contracts.outside_execution import (
    OutsideExecution,
    OutsideExecutionProtocol,
    read_calls,
    read_outside_execution,
)
from guardian_account.core.events import Event, SignerLinked, TransactionExecuted
from guardian_account.core.execution import Call, Contract
from guardian_account.core.logging_config import short_id
from guardian_account.core.nonce_tracker import OutsideNonceStore
from guardian_account.core.signers import CalldataReader, Signer
from guardian_account.core.typed_signing import get_selector_from_name

logger = logging.getLogger(__name__)

Handler = Callable[[Tuple[int, ...]], List[int]]

# Protocol entry points can never be reached through a self-call
FORBIDDEN_SELF_SELECTORS = frozenset(
    get_selector_from_name(name) for name in ("__validate__", "__validate_deploy__", "__execute__")
)


def encode_responses(responses: Sequence[Sequence[int]]) -> List[int]:
    result = [len(responses)]
    for response in responses:
        result.extend([len(response), *response])
    return result


def assert_consumed(calldata: Tuple[int, ...]) -> None:
    CalldataReader(calldata).assert_consumed()


class BaseAccount(Contract):
    """Account plumbing; subclasses define who may authorize what."""

    name = "Account"
    version = (0, 0, 0)

    def _init_components(self) -> None:
        self.outside_execution = OutsideExecutionProtocol(self)

    # ==================== Host callbacks ====================

    def get_outside_nonces(self) -> OutsideNonceStore:
        return self.state.outside_nonces

    def get_block_timestamp(self) -> int:
        return self.context.get_block_timestamp()

    def get_caller_address(self) -> int:
        return self.context.get_caller_address()

    def get_chain_id(self) -> int:
        return self.context.chain_id

    def emit(self, event: Event) -> None:
        self.state.events.append(event)

    @property
    def events(self) -> List[Event]:
        return self.state.events

    def _link_signer(self, signer: Signer) -> int:
        registry = self.state.registry
        guid = signer.guid()
        if guid not in registry:
            registry.link(signer)
            self.emit(SignerLinked(guid, int(signer.signer_type)))
        return guid

    def _assert_only_self(self) -> None:
        assert_only_self(self.get_caller_address(), self.address)

    # ==================== Authorization policy ====================

    def assert_valid_calls_and_signature(
        self, calls: Sequence[Call], message_hash: int, signature: Sequence[int], is_from_outside: bool
    ) -> None:
        raise NotImplementedError

    def is_valid_signature(self, message_hash: int, signature: Sequence[int]) -> int:
        raise NotImplementedError

    def assert_allowed_self_calls(self, calls: Sequence[Call]) -> None:
        """A single self-call may target any mutator but the protocol entry points; a multicall none."""
        if len(calls) == 1 and calls[0].to == self.address:
            if calls[0].selector in FORBIDDEN_SELF_SELECTORS:
                raise ForbiddenCallError(f"self-call to {hex(calls[0].selector)} is forbidden")
        else:
            assert_no_self_call(calls, self.address)

    # ==================== Transaction phases ====================

    def validate_transaction(self, calls: Sequence[Call]) -> int:
        """
        Validate-phase entry point.

        Returns:
            ``VALIDATED`` when the transaction signature authorizes ``calls``
        """
        assert_only_protocol(self.get_caller_address())
        tx_info = self.context.get_tx_info()
        assert_correct_tx_version(tx_info.version)
        self.assert_valid_calls_and_signature(calls, tx_info.transaction_hash, tx_info.signature, False)
        return config.VALIDATED

    def execute_transaction(self, calls: Sequence[Call]) -> List[List[int]]:
        assert_only_protocol(self.get_caller_address())
        tx_info = self.context.get_tx_info()
        assert_correct_tx_version(tx_info.version)
        responses = self.execute_calls(calls)
        self.emit(TransactionExecuted(tx_info.transaction_hash, tuple(tuple(r) for r in responses)))
        return responses

    def execute_calls(self, calls: Sequence[Call]) -> List[List[int]]:
        responses = []
        for index, call in enumerate(calls):
            try:
                responses.append(self.context.call_contract(call.to, call.selector, call.calldata))
            except AccountError as e:
                logger.warning(
                    "Multicall failed",
                    extra={
                        "event": "account.multicall_failed",
                        "account": short_id(self.address),
                        "index": index,
                        "reason": e.code,
                    },
                )
                raise MulticallFailedError(index, e) from e
        return responses

    # ==================== Outside execution ====================

    def execute_from_outside(self, outside_execution: OutsideExecution, signature: Sequence[int]) -> List[List[int]]:
        message_hash, responses = self.outside_execution.execute_from_outside(outside_execution, signature)
        self.emit(TransactionExecuted(message_hash, tuple(tuple(r) for r in responses)))
        return responses

    def is_valid_outside_execution_nonce(self, nonce: int) -> bool:
        return self.outside_execution.is_valid_outside_execution_nonce(nonce)

    def get_outside_execution_message_hash(self, outside_execution: OutsideExecution) -> int:
        return self.outside_execution.get_outside_execution_message_hash(outside_execution)

    # ==================== Metadata ====================

    def get_name(self) -> int:
        return config.short_string_to_int(self.name)

    def get_version(self) -> Tuple[int, int, int]:
        return self.version

    # ==================== Entry points ====================

    def entrypoints(self) -> Dict[str, Handler]:
        return {
            "__validate__": self._ep_validate,
            "__execute__": self._ep_execute,
            "execute_from_outside": self._ep_execute_from_outside,
            "is_valid_outside_execution_nonce": self._ep_is_valid_outside_execution_nonce,
            "get_outside_execution_message_hash": self._ep_get_outside_execution_message_hash,
            "is_valid_signature": self._ep_is_valid_signature,
            "get_name": self._getter(self.get_name),
            "get_version": self._ep_get_version,
        }

    @staticmethod
    def _no_args(method: Callable[[], object]) -> Handler:
        def handler(calldata: Tuple[int, ...]) -> List[int]:
            assert_consumed(calldata)
            method()
            return []

        return handler

    @staticmethod
    def _getter(method: Callable[[], int]) -> Handler:
        def handler(calldata: Tuple[int, ...]) -> List[int]:
            assert_consumed(calldata)
            return [int(method())]

        return handler

    def _ep_validate(self, calldata: Tuple[int, ...]) -> List[int]:
        reader = CalldataReader(calldata)
        calls = read_calls(reader)
        reader.assert_consumed()
        return [self.validate_transaction(calls)]

    def _ep_execute(self, calldata: Tuple[int, ...]) -> List[int]:
        reader = CalldataReader(calldata)
        calls = read_calls(reader)
        reader.assert_consumed()
        return encode_responses(self.execute_transaction(calls))

    def _ep_execute_from_outside(self, calldata: Tuple[int, ...]) -> List[int]:
        reader = CalldataReader(calldata)
        outside_execution = read_outside_execution(reader)
        signature = reader.read_span()
        reader.assert_consumed()
        return encode_responses(self.execute_from_outside(outside_execution, signature))

    def _ep_is_valid_outside_execution_nonce(self, calldata: Tuple[int, ...]) -> List[int]:
        reader = CalldataReader(calldata)
        nonce = reader.read()
        reader.assert_consumed()
        return [int(self.is_valid_outside_execution_nonce(nonce))]

    def _ep_get_outside_execution_message_hash(self, calldata: Tuple[int, ...]) -> List[int]:
        reader = CalldataReader(calldata)
        outside_execution = read_outside_execution(reader)
        reader.assert_consumed()
        return [self.get_outside_execution_message_hash(outside_execution)]

    def _ep_is_valid_signature(self, calldata: Tuple[int, ...]) -> List[int]:
        reader = CalldataReader(calldata)
        message_hash = reader.read()
        signature = reader.read_span()
        reader.assert_consumed()
        return [self.is_valid_signature(message_hash, signature)]

    def _ep_get_version(self, calldata: Tuple[int, ...]) -> List[int]:
        assert_consumed(calldata)
        return list(self.get_version())
