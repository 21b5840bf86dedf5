# bindexer/templates.py
"""Starter configurations for `bindexer init --template`."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

_TRANSFER = "Transfer(address indexed from, address indexed to, uint256 value)"
_APPROVAL = "Approval(address indexed owner, address indexed spender, uint256 value)"


@dataclass(slots=True, frozen=True)
class ProjectTemplate:
    name: str
    description: str
    config: dict[str, Any]
    instructions: list[str] = field(default_factory=list)


TEMPLATES: dict[str, ProjectTemplate] = {
    "erc20": ProjectTemplate(
        name="ERC-20 Token",
        description="Index ERC-20 token transfers and approvals",
        config={
            "version": "1.0",
            "project": "erc20-indexer",
            "environment": "development",
            "network": "mainnet",
            "contracts": [
                {"address": "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48", "name": "USDC",
                 "events": ["Transfer", "Approval"]},
            ],
            "events": [
                {"signature": _TRANSFER, "name": "Transfer"},
                {"signature": _APPROVAL, "name": "Approval"},
            ],
            "startBlock": 18_000_000,
            "api": {"enabled": True, "port": 3000, "cors": True},
            "database": {"path": "erc20-logs.sqlite", "walMode": True},
            "monitoring": {"progressTracking": True, "logLevel": "info"},
            "retry": {"maxRetries": 3, "baseDelay": 1000, "maxDelay": 30000, "strategy": "exponential"},
        },
        instructions=[
            "Replace the contract address with your target ERC-20 token",
            "Adjust startBlock to your desired starting point",
            'Set your RPC endpoint: export RPC_URL="https://..."',
            "Run: bindexer run",
        ],
    ),
    "uniswap-v3": ProjectTemplate(
        name="Uniswap V3",
        description="Index Uniswap V3 pool swaps and liquidity events",
        config={
            "version": "1.0",
            "project": "uniswap-v3-indexer",
            "environment": "development",
            "network": "mainnet",
            "contracts": [
                {"address": "0x88e6A0c2dDD26FEEb64F039a2c41296FcB3f5640", "name": "USDC-WETH-0.05%",
                 "events": ["Swap", "Mint", "Burn", "Collect"]},
            ],
            "events": [
                {"signature": "Swap(address indexed sender, address indexed recipient, int256 amount0, "
                              "int256 amount1, uint160 sqrtPriceX96, uint128 liquidity, int24 tick)",
                 "name": "Swap"},
                {"signature": "Mint(address sender, address indexed owner, int24 indexed tickLower, "
                              "int24 indexed tickUpper, uint128 amount, uint256 amount0, uint256 amount1)",
                 "name": "Mint"},
                {"signature": "Burn(address indexed owner, int24 indexed tickLower, int24 indexed tickUpper, "
                              "uint128 amount, uint256 amount0, uint256 amount1)",
                 "name": "Burn"},
                {"signature": "Collect(address indexed owner, address recipient, int24 indexed tickLower, "
                              "int24 indexed tickUpper, uint128 amount0, uint128 amount1)",
                 "name": "Collect"},
            ],
            "startBlock": 18_000_000,
            "api": {"enabled": True, "port": 3000, "cors": True},
            "database": {"path": "uniswap-v3-logs.sqlite", "walMode": True},
            "monitoring": {"progressTracking": True, "logLevel": "info"},
            "batchSize": 2000,
        },
        instructions=[
            "Replace the pool address with your target Uniswap V3 pool",
            "Busy pools need smaller batches; lower batchSize if the provider rejects ranges",
            "Use a dedicated RPC endpoint for historical sync",
        ],
    ),
    "defi": ProjectTemplate(
        name="DeFi Protocol",
        description="Index lending protocol events (deposits, borrows, liquidations)",
        config={
            "version": "1.0",
            "project": "defi-indexer",
            "environment": "development",
            "network": "mainnet",
            "contracts": [
                {"address": "0x7d2768dE32b0b80b7a3454c06BdAc94A69DDc7A9", "name": "Aave-LendingPool",
                 "events": ["Deposit", "Withdraw", "Borrow", "Repay", "LiquidationCall"]},
            ],
            "events": [
                {"signature": "Deposit(address indexed reserve, address user, address indexed onBehalfOf, "
                              "uint256 amount, uint16 indexed referral)", "name": "Deposit"},
                {"signature": "Withdraw(address indexed reserve, address indexed user, address indexed to, "
                              "uint256 amount)", "name": "Withdraw"},
                {"signature": "Borrow(address indexed reserve, address user, address indexed onBehalfOf, "
                              "uint256 amount, uint256 borrowRateMode, uint256 borrowRate, uint16 indexed referral)",
                 "name": "Borrow"},
                {"signature": "Repay(address indexed reserve, address indexed user, address indexed repayer, "
                              "uint256 amount)", "name": "Repay"},
                {"signature": "LiquidationCall(address indexed collateralAsset, address indexed debtAsset, "
                              "address indexed user, uint256 debtToCover, uint256 liquidatedCollateralAmount, "
                              "address liquidator, bool receiveAToken)", "name": "LiquidationCall"},
            ],
            "startBlock": 18_000_000,
            "api": {"enabled": True, "port": 3000, "cors": True},
            "database": {"path": "defi-logs.sqlite", "walMode": True},
            "monitoring": {"progressTracking": True, "logLevel": "info"},
            "profiles": {
                "production": {
                    "monitoring": {"progressTracking": True, "logLevel": "warn", "structuredLogging": True},
                    "retry": {"maxRetries": 5, "baseDelay": 2000, "maxDelay": 60000, "strategy": "exponential"},
                },
            },
        },
        instructions=[
            "Replace with your target protocol contracts",
            "Use --profile production for deployed environments",
        ],
    ),
    "multi-chain": ProjectTemplate(
        name="Multi-Chain",
        description="One project, one profile per network",
        config={
            "version": "1.0",
            "project": "multi-chain-indexer",
            "environment": "development",
            "network": "mainnet",
            "contracts": [
                {"address": "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48", "name": "USDC-Mainnet",
                 "network": "mainnet"},
            ],
            "events": [{"signature": _TRANSFER, "name": "Transfer"}],
            "startBlock": 18_000_000,
            "api": {"enabled": True, "port": 3000, "cors": True},
            "database": {"path": "multi-chain-logs.sqlite", "walMode": True},
            "profiles": {
                "polygon": {
                    "network": "polygon",
                    "contracts": [{"address": "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174",
                                   "name": "USDC-Polygon", "network": "polygon"}],
                    "startBlock": 40_000_000,
                    "database": {"path": "polygon-logs.sqlite"},
                },
                "arbitrum": {
                    "network": "arbitrum",
                    "contracts": [{"address": "0xFF970A61A04b1cA14834A43f5dE4533eBDDB5CC8",
                                   "name": "USDC-Arbitrum", "network": "arbitrum"}],
                    "startBlock": 100_000_000,
                    "database": {"path": "arbitrum-logs.sqlite"},
                },
            },
        },
        instructions=[
            "Select a network with --profile polygon or --profile arbitrum",
            "Set a network-specific RPC_URL for each run",
            "Keep one database file per network",
        ],
    ),
    "minimal": ProjectTemplate(
        name="Minimal",
        description="Bare configuration for custom setups",
        config={
            "version": "1.0",
            "project": "custom-indexer",
            "network": "sepolia",
            "contracts": ["0x0000000000000000000000000000000000000000"],
            "events": [_TRANSFER],
            "api": {"enabled": False, "port": 3000},
            "monitoring": {"progressTracking": True, "logLevel": "info"},
        },
        instructions=[
            "Replace the contract address and event signature",
            "Choose your target network",
        ],
    ),
}


def get_template(name: str) -> ProjectTemplate | None:
    return TEMPLATES.get(name)


def template_names() -> list[str]:
    return list(TEMPLATES)
