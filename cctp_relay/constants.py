"""Circle CCTP V2 constants used by the relayer.

Domain mappings, ``MessageTransmitterV2`` deployments and Iris API hosts.

CCTP uses its own domain identifiers, not EVM chain IDs. A burn on the source
chain is signed by Circle's Iris attestation service and finalised on the
destination chain with ``MessageTransmitterV2.receiveMessage()``.

All CCTP V2 contracts share the same address across EVM chains (deployed via CREATE2).

- `CCTP V2 documentation <https://developers.circle.com/cctp>`_
- `EVM contract addresses <https://developers.circle.com/cctp/evm-smart-contracts>`_
"""

from eth_typing import HexAddress

#: CCTP V2 MessageTransmitterV2 - handles message passing and attestation verification.
#: Same address on all EVM chains via CREATE2.
MESSAGE_TRANSMITTER_V2: HexAddress = HexAddress("0x81D40F21F12A8F0E3252Bccb954D722d4c464B64")

CCTP_DOMAIN_ETHEREUM = 0
CCTP_DOMAIN_AVALANCHE = 1
CCTP_DOMAIN_OPTIMISM = 2
CCTP_DOMAIN_ARBITRUM = 3
CCTP_DOMAIN_BASE = 6
CCTP_DOMAIN_POLYGON = 7
CCTP_DOMAIN_UNICHAIN = 10
CCTP_DOMAIN_LINEA = 11

#: Mapping from EVM chain ID to CCTP domain ID.
CHAIN_ID_TO_CCTP_DOMAIN: dict[int, int] = {
    1: CCTP_DOMAIN_ETHEREUM,
    10: CCTP_DOMAIN_OPTIMISM,
    42161: CCTP_DOMAIN_ARBITRUM,
    137: CCTP_DOMAIN_POLYGON,
    43114: CCTP_DOMAIN_AVALANCHE,
    8453: CCTP_DOMAIN_BASE,
    59144: CCTP_DOMAIN_LINEA,
    130: 12,  # Codex
    146: 13,  # Sonic
    480: 14,  # World Chain
    1301: 15,  # Unichain testnet
    534352: 16,  # Sei
    56: 17,  # BNB Smart Chain
    50: 18,  # XDC
    999: 19,  # HyperEVM
    57073: 21,  # Ink
    98866: 22,  # Plume
}

#: Domains where the relayer knows the ``MessageTransmitterV2`` deployment.
#:
#: Transfers into any other domain cannot be finalised by this relayer.
MESSAGE_TRANSMITTER_V2_DEPLOYMENTS: dict[int, HexAddress] = {
    CCTP_DOMAIN_ETHEREUM: MESSAGE_TRANSMITTER_V2,
    CCTP_DOMAIN_AVALANCHE: MESSAGE_TRANSMITTER_V2,
    CCTP_DOMAIN_OPTIMISM: MESSAGE_TRANSMITTER_V2,
    CCTP_DOMAIN_ARBITRUM: MESSAGE_TRANSMITTER_V2,
    CCTP_DOMAIN_BASE: MESSAGE_TRANSMITTER_V2,
    CCTP_DOMAIN_POLYGON: MESSAGE_TRANSMITTER_V2,
    CCTP_DOMAIN_UNICHAIN: MESSAGE_TRANSMITTER_V2,
    CCTP_DOMAIN_LINEA: MESSAGE_TRANSMITTER_V2,
}

#: Mapping from CCTP domain ID to human-readable chain name.
CCTP_DOMAIN_NAMES: dict[int, str] = {
    CCTP_DOMAIN_ETHEREUM: "Ethereum",
    CCTP_DOMAIN_AVALANCHE: "Avalanche",
    CCTP_DOMAIN_OPTIMISM: "Optimism",
    CCTP_DOMAIN_ARBITRUM: "Arbitrum",
    CCTP_DOMAIN_BASE: "Base",
    CCTP_DOMAIN_POLYGON: "Polygon",
    CCTP_DOMAIN_UNICHAIN: "Unichain",
    CCTP_DOMAIN_LINEA: "Linea",
    12: "Codex",
    13: "Sonic",
    14: "World Chain",
    15: "Unichain Sepolia",
    16: "Sei",
    17: "BNB Smart Chain",
    18: "XDC",
    19: "HyperEVM",
    21: "Ink",
    22: "Plume",
}

#: Circle Iris attestation API base URL (mainnet).
IRIS_API_BASE_URL = "https://iris-api.circle.com"

#: Circle Iris attestation API base URL (testnet sandbox).
IRIS_API_SANDBOX_URL = "https://iris-api-sandbox.circle.com"

#: Range CCTP explorer base URL for transaction status lookup
CCTP_EXPLORER_BASE_URL = "https://usdc.range.org/status"

#: CCTP domain ID → Range explorer chain slug
DOMAIN_TO_EXPLORER_CHAIN: dict[int, str] = {
    CCTP_DOMAIN_ETHEREUM: "ethereum",
    CCTP_DOMAIN_ARBITRUM: "arbitrum",
    CCTP_DOMAIN_BASE: "base",
    CCTP_DOMAIN_POLYGON: "polygon",
}

#: Minimal MessageTransmitterV2 ABI: finalisation and nonce lookup
MESSAGE_TRANSMITTER_V2_ABI: list[dict] = [
    {
        "type": "function",
        "name": "receiveMessage",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "message", "type": "bytes"},
            {"name": "attestation", "type": "bytes"},
        ],
        "outputs": [{"name": "success", "type": "bool"}],
    },
    {
        "type": "function",
        "name": "usedNonces",
        "stateMutability": "view",
        "inputs": [{"name": "nonce", "type": "bytes32"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]

#: Bridge contract ``Bridge`` event ABI, emitted when a user burns USDC for a cross-chain transfer
BRIDGE_EVENT_ABI: list[dict] = [
    {
        "type": "event",
        "name": "Bridge",
        "anonymous": False,
        "inputs": [
            {"name": "token", "type": "address", "indexed": True},
            {"name": "destinationDomain", "type": "uint32", "indexed": True},
            {"name": "receiver", "type": "address", "indexed": True},
            {"name": "amount", "type": "uint256", "indexed": False},
            {"name": "nonce", "type": "uint64", "indexed": False},
            {"name": "speed", "type": "uint8", "indexed": False},
        ],
    }
]

#: Canonical signature of the ``Bridge`` event, hashed to get topic 0
BRIDGE_EVENT_SIGNATURE = "Bridge(address,uint32,address,uint256,uint64,uint8)"

#: Iris status value for a signed attestation
ATTESTATION_STATUS_COMPLETE = "complete"

#: Placeholder Iris returns in the ``attestation`` field before signing
ATTESTATION_PENDING = "PENDING"
