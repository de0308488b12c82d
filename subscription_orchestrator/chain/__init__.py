from .membership import MembershipEligibility
from .rpc import JsonRpcClient, RpcMethodError, RpcTransportError
from .signer import LocalOwnerSigner, SigningSlot
from .smart_account import SmartAccountClient
from .subgraph import SubgraphAssetIndexer, SubgraphError

__all__ = [
    "JsonRpcClient",
    "LocalOwnerSigner",
    "MembershipEligibility",
    "RpcMethodError",
    "RpcTransportError",
    "SigningSlot",
    "SmartAccountClient",
    "SubgraphAssetIndexer",
    "SubgraphError",
]
