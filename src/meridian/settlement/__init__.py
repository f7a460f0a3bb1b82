"""Settlement core: serializer, signing, strategies, executor and allocations."""

from meridian.settlement.allocations import (
    AllocationManager,
    AllocationOutcome,
    ExecutionLeg,
    select_holdings,
)
from meridian.settlement.executor import (
    SettlementAttempt,
    SettlementExecutor,
    SettlementResult,
    build_execute_command,
)
from meridian.settlement.keystore import (
    Ed25519Signer,
    InMemoryKeyStore,
    KeyStore,
    generate_signing_key,
)
from meridian.settlement.serializer import PartyContextSerializer, SerializerNotRunningError
from meridian.settlement.signing import InteractiveSigningProtocol
from meridian.settlement.strategies import (
    BroadenedActorStrategy,
    InteractiveStrategy,
    OperatorOnlyStrategy,
    SettlementContext,
    SettlementLeg,
    SettlementStrategy,
    default_strategies,
)

__all__ = [
    # Allocations
    "AllocationManager",
    "AllocationOutcome",
    "ExecutionLeg",
    "select_holdings",
    # Executor
    "SettlementAttempt",
    "SettlementExecutor",
    "SettlementResult",
    "build_execute_command",
    # Strategies
    "SettlementStrategy",
    "SettlementContext",
    "SettlementLeg",
    "OperatorOnlyStrategy",
    "InteractiveStrategy",
    "BroadenedActorStrategy",
    "default_strategies",
    # Signing
    "InteractiveSigningProtocol",
    "KeyStore",
    "InMemoryKeyStore",
    "Ed25519Signer",
    "generate_signing_key",
    # Serializer
    "PartyContextSerializer",
    "SerializerNotRunningError",
]
