"""
Registro global de direcciones conocidas de Solana:
programas (staking, DEX, lending, bridges, LP, NFT, infraestructura) y
hot wallets de exchanges centralizados.
"""

import enum
from dataclasses import dataclass

from models.transaction import TransactionType


class ProgramKind(str, enum.Enum):
    SYSTEM = "SYSTEM"
    STAKING = "STAKING"
    DEX = "DEX"
    LENDING = "LENDING"
    BRIDGE = "BRIDGE"
    LP = "LP"
    NFT_MARKETPLACE = "NFT_MARKETPLACE"
    NFT_METADATA = "NFT_METADATA"
    MEMO = "MEMO"
    INFRA = "INFRA"


@dataclass(frozen=True)
class KnownProgram:
    name: str
    kind: ProgramKind
    # Tipo fijo si el programa lo determina por sí solo
    tx_type: TransactionType | None = None
    liquid_staking: bool = False


_K = ProgramKind
_T = TransactionType

KNOWN_PROGRAMS: dict[str, KnownProgram] = {
    # Programas del sistema
    "11111111111111111111111111111111": KnownProgram("System Program", _K.SYSTEM),
    "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA": KnownProgram("Token Program", _K.SYSTEM),
    "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb": KnownProgram("Token 2022", _K.SYSTEM),
    "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL": KnownProgram("Associated Token", _K.SYSTEM),
    # Staking nativo y líquido
    "Stake11111111111111111111111111111111111111": KnownProgram("Native Staking", _K.STAKING, _T.STAKE),
    "MarBmsSgKXdrN1egZf5sqe1TMai9K1rChYNDJgjq7aD": KnownProgram("Marinade Finance", _K.STAKING, _T.STAKE, True),
    "mRefx8ypXNxE59NhoBqwqb3vTvjgf8MYECp4kgJWiDY": KnownProgram("Marinade Finance", _K.STAKING, _T.STAKE, True),
    "Jito4APyf642JPZPx3hGc6WWJ8zPKtRbRs4P815Awbb": KnownProgram("Jito Staking", _K.STAKING, _T.STAKE, True),
    "BLZEsAXzxGETEMfWcBqBR4YjbFPSTVEbrKGJw6F7v7nD": KnownProgram("BlazeStake", _K.STAKING, _T.STAKE, True),
    # DEX / AMM
    "JUP6LkbZbjS1jKKwapdHNy74zcZ3tLUZoi5QNyVTaV4": KnownProgram("Jupiter", _K.DEX, _T.SWAP),
    "JUP4Fb2cqiRUcaTHdrPC8h2gNsA2ETXiPDD33WcGuJB": KnownProgram("Jupiter", _K.DEX, _T.SWAP),
    "675kPX9MHTjS2zt1qfr1NYHuzeLXfQM9H24wFSUt1Mp8": KnownProgram("Raydium AMM", _K.DEX, _T.SWAP),
    "CAMMCzo5YL8w4VFF8KVHrK22GGUsp5VTaW7grrKgrWqK": KnownProgram("Raydium CLMM", _K.DEX, _T.SWAP),
    "whirLbMiicVdio4qvUfM5KAg6Ct8VwpYzGff3uctyCc": KnownProgram("Orca Whirlpool", _K.DEX, _T.SWAP),
    "9W959DqEETiGZocYWCQPaJ6sBmUzgfxXfqGeTEdp3aQP": KnownProgram("Orca v1", _K.DEX, _T.SWAP),
    # Lending
    "So1endDq2YkqhipRh3WViPa8hFULewJHGDMFineLspsg": KnownProgram("Solend", _K.LENDING),
    "MFv2hWf31Z9kbCa1snEPYctwafyhdvnV7FZnsebVacA": KnownProgram("Marginfi", _K.LENDING),
    "KLend2g3cP87ber8FQxTo4STYnGBhvM9LPbXPjXmTdgq": KnownProgram("Kamino Lending", _K.LENDING),
    # Bridges
    "worm2ZoG2kUd4vFXhvjh93UUH596ayRfgQ2MgjNMTth": KnownProgram("Wormhole", _K.BRIDGE),
    "DEbrdGj3HsRsAzx6uH4MKyREKxVAfBydijLUF3ygsFfh": KnownProgram("deBridge", _K.BRIDGE),
    # Liquidez
    "LBUZKhRxPF3XUpBCjp4YzTKgLccjZhTSDM9YuVaPwxo": KnownProgram("Meteora DLMM", _K.LP),
    # NFT
    "metaqbxxUerdq28cj1RbAWkYQm3ybzjb6a8bt518x1s": KnownProgram("Metaplex Token Metadata", _K.NFT_METADATA),
    "BGUMAp9Gq7iTEuizy4pqaxsTyUCBK68MDfK752saRPUY": KnownProgram("Metaplex Bubblegum", _K.NFT_METADATA),
    "CndyV3LdqHUfDLmE5naZjVN8rBZz4tqhdefbAnjHG3JR": KnownProgram("Metaplex Candy Machine", _K.NFT_METADATA),
    "M2mx93ekt1fmXSVkTrUL9xVFHkmME8HTUi5Cyc5aF7K": KnownProgram("Magic Eden", _K.NFT_MARKETPLACE),
    "TSWAPaqyCSx2KABk68Shruf4rp7CxcNi8hAsbdwmHbN": KnownProgram("Tensor", _K.NFT_MARKETPLACE),
    # Memo
    "MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcHr": KnownProgram("Memo Program", _K.MEMO),
    "Memo1UhkJRfHyvLMcVucJwxXeuD728EqVDDwQDxFMNo": KnownProgram("Memo Program v1", _K.MEMO),
    # Infraestructura
    "BPFLoaderUpgradeab1e11111111111111111111111": KnownProgram("BPF Loader Upgradeable", _K.INFRA, _T.PROGRAM_INTERACTION),
    "BPFLoader2111111111111111111111111111111111": KnownProgram("BPF Loader v2", _K.INFRA, _T.PROGRAM_INTERACTION),
    "AddressLookupTab1e1111111111111111111111111": KnownProgram("Address Lookup Table", _K.INFRA, _T.PROGRAM_INTERACTION),
    "ComputeBudget111111111111111111111111111111": KnownProgram("Compute Budget", _K.INFRA),
}

# Programas que no indican por sí solos la intención de la transacción
NEUTRAL_PROGRAM_KINDS: frozenset[ProgramKind] = frozenset({_K.SYSTEM, _K.INFRA, _K.MEMO})

KNOWN_EXCHANGE_WALLETS: dict[str, str] = {
    "5tzFkiKscXHK5ZXCGbXZxdw7gTjjD1mBwuoFbhUvuAi9": "Binance",
    "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM": "Binance",
    "2ojv9BAiHUrvsm9gxDe7fJSzbNZSJcxZvf8dqmWGHG8S": "Binance",
    "GJRs4FwHtemZ5ZE9x3FNvJ8TMwitKTh21yxdRPqn7npE": "Coinbase",
    "H8sMJSCQxfKiFTCfDR3DUMLPwcRbM61LGFJ8N4dK3WjS": "Coinbase",
    "FWznbcNXWQuHTawe9RxvQ2LdCENssh12dsznf4RiouN5": "Kraken",
    "CuieVDEDtLo7FypA9SbLM9saXFdb1dsshEkyErMqkRQq": "Kraken",
    "5VCwKtCXgCJ6kit5FybXjvriW3xELsFDhYrPSqtJNmcD": "OKX",
    "2AQdpHJ2JpcEgPiATUXjQxA8QMAHgQGFx51kGtjzSYS2": "FTX",
}


def get_known_program(program_id: str | None) -> KnownProgram | None:
    if not program_id:
        return None
    return KNOWN_PROGRAMS.get(program_id)


def get_known_exchange(address: str | None) -> str | None:
    if not address:
        return None
    return KNOWN_EXCHANGE_WALLETS.get(address)


def registry_label(address: str | None) -> str | None:
    """Etiqueta del registro global: hot wallet de exchange o nombre de programa."""
    exchange = get_known_exchange(address)
    if exchange:
        return exchange
    program = get_known_program(address)
    return program.name if program else None
