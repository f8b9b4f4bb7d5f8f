"""Reputation card claims — web3_infra package.

- ClaimSigner: EIP-712 signing/recovery of claim grants
- ReputationCardClient: contract reads, claim transaction build/broadcast
- RPCManager: endpoint pool with failover
- ResilientFetcher: retry with backoff for every chain call

``event_watcher`` is imported directly (it depends on ``storage``).
"""

from .eip712_signer import ClaimSigner
from .reputation_card import LocalTransactionSigner, ReputationCardClient, ReputationCardConfig
from .retry import ResilientFetcher, RetryPolicy
from .rpc_manager import RPCError, RPCManager, RPCManagerConfig

__all__ = [
    "ClaimSigner",
    "LocalTransactionSigner",
    "RPCError",
    "RPCManager",
    "RPCManagerConfig",
    "ReputationCardClient",
    "ReputationCardConfig",
    "ResilientFetcher",
    "RetryPolicy",
]
