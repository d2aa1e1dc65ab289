import sys
from pathlib import Path

import pytest

# Test helpers (signing, mocks) live next to this file
sys.path.insert(0, str(Path(__file__).parent))

from guardian_account.core import config
from guardian_account.core.contracts import GuardianAccount, MultisigAccount
from guardian_account.core.execution import ExecutionContext

from mocks import T0, MockDapp
from signing import NativeKeyPair, Secp256r1KeyPair


@pytest.fixture
def context():
    return ExecutionContext(chain_id=config.CHAIN_ID, block_timestamp=T0)


@pytest.fixture(scope="session")
def owner_key():
    return NativeKeyPair(b"owner")


@pytest.fixture(scope="session")
def guardian_key():
    return NativeKeyPair(b"guardian")


@pytest.fixture(scope="session")
def backup_key():
    return Secp256r1KeyPair(b"guardian-backup")


@pytest.fixture(scope="session")
def new_owner_key():
    return NativeKeyPair(b"new-owner")


@pytest.fixture(scope="session")
def stranger_key():
    return NativeKeyPair(b"stranger")


@pytest.fixture
def account(context, owner_key, guardian_key):
    """Account with an owner and a guardian."""
    return GuardianAccount(context, owner_key.signer, guardian_key.signer)


@pytest.fixture
def owner_only_account(context, owner_key):
    return GuardianAccount(context, owner_key.signer)


@pytest.fixture
def dapp(context):
    return MockDapp(context)


@pytest.fixture(scope="session")
def multisig_keys():
    return [NativeKeyPair(b"multisig-%d" % i) for i in range(3)]


@pytest.fixture
def multisig(context, multisig_keys):
    """2-of-3 multisig."""
    return MultisigAccount(context, 2, [key.signer for key in multisig_keys])
