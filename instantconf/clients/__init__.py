"""
InstantConf — External Service Clients

JSON-RPC transport (httpx), push-channel subscriber (websockets) and the
probe transaction signer (eth-account).
"""

from instantconf.clients.rpc import RpcClient
from instantconf.clients.signer import SignedPayload, TransferSigner
from instantconf.clients.subscriber import EventSubscriber, SubscriberState

__all__ = [
    "RpcClient",
    "EventSubscriber",
    "SubscriberState",
    "TransferSigner",
    "SignedPayload",
]
