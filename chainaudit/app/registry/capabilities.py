"""
Network capability registry.

This module defines the set of networks the engine knows about. Each
network entry explicitly binds together:

- a public network identifier
- the source language and whether an analyzer is implemented
- a human-readable feature list
- the analysis settings handed to the network analyzer
  (parser, analyzer identifiers, external tools, file extensions,
  feature flags, rule ids)

Networks must be registered here to be addressable via the API.
Registered but unimplemented networks are refused by the pipeline
factory with UnsupportedNetworkError.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class CapabilityEntry(BaseModel):
    """
    Public description of one network.
    """

    network: str
    display_name: str
    language: str
    implemented: bool
    features: List[str]

    model_config = ConfigDict(frozen=True, extra="forbid")


class NetworkSettings(BaseModel):
    """
    Analysis settings for one network.
    """

    parser: str
    static_analyzers: List[str]
    semantic_analyzers: List[str]
    external_tools: List[str] = Field(default_factory=list)
    file_extensions: List[str]
    config_files: List[str] = Field(default_factory=list)
    feature_flags: Dict[str, bool] = Field(default_factory=dict)
    vulnerability_rules: List[str] = Field(default_factory=list)

    def accepts_file(self, file_name: str) -> bool:
        lowered = file_name.lower()
        return any(lowered.endswith(ext) for ext in self.file_extensions)

    model_config = ConfigDict(frozen=True, extra="forbid")


CAPABILITY_REGISTRY: Dict[str, CapabilityEntry] = {
    "solana": CapabilityEntry(
        network="solana",
        display_name="Solana",
        language="rust",
        implemented=True,
        features=["CPI Analysis", "PDA Security", "Anchor Support", "Token Program"],
    ),
    "near": CapabilityEntry(
        network="near",
        display_name="NEAR Protocol",
        language="rust",
        implemented=True,
        features=[
            "Cross-contract Calls",
            "Callbacks",
            "Storage Management",
            "Gas Optimization",
        ],
    ),
    "aptos": CapabilityEntry(
        network="aptos",
        display_name="Aptos",
        language="move",
        implemented=False,
        features=[
            "Resource Safety",
            "Move Prover",
            "Formal Verification",
            "Module System",
        ],
    ),
    "sui": CapabilityEntry(
        network="sui",
        display_name="Sui",
        language="move",
        implemented=False,
        features=[
            "Object Model",
            "Parallel Execution",
            "Move Bytecode",
            "Ownership System",
        ],
    ),
    "ethereum": CapabilityEntry(
        network="ethereum",
        display_name="Ethereum",
        language="solidity",
        implemented=False,
        features=[
            "EVM Analysis",
            "Gas Optimization",
            "Reentrancy Detection",
            "Proxy Patterns",
        ],
    ),
    "starknet": CapabilityEntry(
        network="starknet",
        display_name="StarkNet",
        language="cairo",
        implemented=False,
        features=[
            "STARK Proofs",
            "Account Abstraction",
            "L2 Security",
            "Cairo VM",
        ],
    ),
}


NETWORK_SETTINGS: Dict[str, NetworkSettings] = {
    "solana": NetworkSettings(
        parser="rust-parser",
        static_analyzers=["solana-rules"],
        semantic_analyzers=["solana-semantic"],
        external_tools=["clippy", "cargo-audit", "solana-security-txt"],
        file_extensions=[".rs"],
        config_files=["Cargo.toml", "Anchor.toml", "Xargo.toml"],
        feature_flags={
            "anchor_support": True,
            "pda_analysis": True,
            "cpi_analysis": True,
            "token_program_analysis": True,
        },
        vulnerability_rules=[
            "SOL-001", "SOL-002", "SOL-003", "SOL-004", "SOL-005",
            "SOL-006", "SOL-007", "SOL-008", "SOL-009", "SOL-010",
            "SOL-101", "SOL-102", "SOL-103",
        ],
    ),
    "near": NetworkSettings(
        parser="rust-parser",
        static_analyzers=["near-rules"],
        semantic_analyzers=["near-semantic"],
        external_tools=["clippy", "cargo-audit", "near-workspaces"],
        file_extensions=[".rs"],
        config_files=["Cargo.toml"],
        feature_flags={
            "callback_analysis": True,
            "storage_analysis": True,
            "cross_contract_analysis": True,
        },
        vulnerability_rules=[
            "NEAR-001", "NEAR-002", "NEAR-003", "NEAR-004",
            "NEAR-005", "NEAR-006", "NEAR-007",
            "NEAR-101", "NEAR-102",
        ],
    ),
    "aptos": NetworkSettings(
        parser="move-parser",
        static_analyzers=["move-rules"],
        semantic_analyzers=["move-semantic"],
        external_tools=["move-prover"],
        file_extensions=[".move"],
        config_files=["Move.toml"],
    ),
    "sui": NetworkSettings(
        parser="move-parser",
        static_analyzers=["move-rules"],
        semantic_analyzers=["move-semantic"],
        external_tools=["sui-move-analyzer"],
        file_extensions=[".move"],
        config_files=["Move.toml"],
    ),
    "ethereum": NetworkSettings(
        parser="solidity-parser",
        static_analyzers=["solidity-rules"],
        semantic_analyzers=["solidity-semantic"],
        external_tools=["slither", "mythril"],
        file_extensions=[".sol"],
        config_files=["hardhat.config.js", "foundry.toml"],
    ),
    "starknet": NetworkSettings(
        parser="cairo-parser",
        static_analyzers=["cairo-rules"],
        semantic_analyzers=["cairo-semantic"],
        external_tools=["caracal"],
        file_extensions=[".cairo"],
        config_files=["Scarb.toml"],
    ),
}


def get_capability(network: str) -> Optional[CapabilityEntry]:
    return CAPABILITY_REGISTRY.get(network.strip().lower())


def get_network_settings(network: str) -> Optional[NetworkSettings]:
    return NETWORK_SETTINGS.get(network.strip().lower())


def list_capabilities() -> List[CapabilityEntry]:
    return list(CAPABILITY_REGISTRY.values())
