# bindexer/config.py
"""
Configuration resolution.

Sources are deep-merged in order (dicts merge, lists and scalars replace):
built-in defaults, the config file (explicit or discovered), BINDEXER_*
environment variables, CLI overrides, then the selected profile. The merged
document is normalized and validated into an `IndexerConfig`; every problem
found is reported at once in a single ConfigurationError.
"""
from __future__ import annotations

import copy
import json
import os
import re
import tomllib
from pathlib import Path
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .application.retry import RetryPolicy
from .domain.decoding import parse_event_signature
from .domain.models import ContractTarget, EventDescriptor
from .domain.value_types import Address
from .errors import ConfigurationError
from .log import get_logger
from .templates import get_template, template_names

logger = get_logger(__name__)

CONFIG_FILE_NAMES = ("bindexer.config.json", ".bindexerrc", ".bindexerrc.json", "bindexer.json")
DEFAULT_BATCH_SIZE = 4999
ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")

ENV_MAPPING: dict[str, str] = {
    "BINDEXER_NETWORK": "network",
    "BINDEXER_START_BLOCK": "startBlock",
    "BINDEXER_API_PORT": "api.port",
    "BINDEXER_API_ENABLED": "api.enabled",
    "BINDEXER_DATABASE_PATH": "database.path",
    "BINDEXER_LOG_LEVEL": "monitoring.logLevel",
    "BINDEXER_MAX_RETRIES": "retry.maxRetries",
    "BINDEXER_BATCH_SIZE": "batchSize",
    "BINDEXER_PROJECT": "project",
    "BINDEXER_ENVIRONMENT": "environment",
}


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class NetworkConfig(_Model):
    name: str
    chain_id: int
    rpc_url: str | None = None
    default_rpc_url: str | None = None
    explorer_url: str | None = None
    default_start_block: int | None = None
    max_batch_size: int | None = Field(default=None, gt=0)

    @property
    def effective_rpc_url(self) -> str | None: return self.rpc_url or self.default_rpc_url


NETWORKS: dict[str, NetworkConfig] = {
    "mainnet": NetworkConfig(name="mainnet", chain_id=1, default_rpc_url="https://eth.llamarpc.com",
                             explorer_url="https://etherscan.io", default_start_block=18_000_000,
                             max_batch_size=4999),
    "sepolia": NetworkConfig(name="sepolia", chain_id=11155111,
                             default_rpc_url="https://ethereum-sepolia-rpc.publicnode.com",
                             explorer_url="https://sepolia.etherscan.io", default_start_block=4_000_000,
                             max_batch_size=4999),
    "holesky": NetworkConfig(name="holesky", chain_id=17000,
                             default_rpc_url="https://ethereum-holesky-rpc.publicnode.com",
                             explorer_url="https://holesky.etherscan.io", default_start_block=1_000_000,
                             max_batch_size=4999),
    "polygon": NetworkConfig(name="polygon", chain_id=137, default_rpc_url="https://polygon-rpc.com",
                             explorer_url="https://polygonscan.com", default_start_block=40_000_000,
                             max_batch_size=3500),
    "arbitrum": NetworkConfig(name="arbitrum", chain_id=42161, default_rpc_url="https://arb1.arbitrum.io/rpc",
                              explorer_url="https://arbiscan.io", default_start_block=100_000_000,
                              max_batch_size=4999),
}


class ContractConfig(_Model):
    address: str
    name: str | None = None
    events: list[str] | None = None
    start_block: int | None = Field(default=None, ge=0)
    network: str | None = None


class EventConfig(_Model):
    signature: str
    name: str | None = None
    contracts: list[str] | None = None


class ApiConfig(_Model):
    enabled: bool = False
    port: int = Field(default=3000, ge=0, le=65535)
    host: str = "localhost"
    cors: bool = True


class DatabaseConfig(_Model):
    path: str = "logs.sqlite"
    url: str | None = None          # any SQLAlchemy URL; overrides `path`
    wal_mode: bool = True
    query_logging: bool = False

    @property
    def sqlalchemy_url(self) -> str:
        if self.url:
            return self.url
        return "sqlite://" if self.path in ("", ":memory:") else f"sqlite:///{self.path}"


class MonitoringConfig(_Model):
    progress_tracking: bool = True
    performance_metrics: bool = True
    log_level: Literal["debug", "info", "warn", "warning", "error"] = "info"
    structured_logging: bool = False


class RetryConfig(_Model):
    max_retries: int = Field(default=3, ge=0)
    base_delay: int = Field(default=1000, ge=0)
    max_delay: int = Field(default=30_000, ge=0)
    strategy: Literal["exponential", "linear", "fixed"] = "linear"


class IndexerConfig(_Model):
    version: str = "1.0"
    project: str | None = None
    environment: str = "development"
    network: NetworkConfig
    contracts: list[ContractConfig]
    events: list[EventConfig]
    start_block: int | None = Field(default=None, ge=0)
    api: ApiConfig = Field(default_factory=ApiConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    batch_size: int | None = Field(default=None, gt=0)
    profiles: dict[str, dict[str, Any]] = Field(default_factory=dict)
    template: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    config_path: str | None = Field(default=None, exclude=True)
    profile: str | None = Field(default=None, exclude=True)

    @property
    def effective_batch_size(self) -> int:
        return self.batch_size or self.network.max_batch_size or DEFAULT_BATCH_SIZE

    @property
    def effective_start_block(self) -> int | None:
        return self.start_block if self.start_block is not None else self.network.default_start_block

    def retry_policy(self) -> RetryPolicy:
        r = self.retry
        return RetryPolicy(max_retries=r.max_retries, base_delay_ms=r.base_delay,
                           max_delay_ms=r.max_delay, strategy=r.strategy)

    def descriptors(self) -> list[EventDescriptor]:
        """One parsed descriptor per distinct event name, in config order."""
        out: dict[str, EventDescriptor] = {}
        for ev in self.events:
            d = parse_event_signature(ev.signature)
            out.setdefault(d.key, d)
        return list(out.values())

    def _event_key(self, label: str) -> str:
        for ev in self.events:
            if ev.name and ev.name.lower() == label.lower():
                return parse_event_signature(ev.signature).key
        return label.lower()

    def targets(self) -> list[ContractTarget]:
        """Contracts on the active network with their resolved event restrictions."""
        descs = self.descriptors()
        restricted: dict[str, set[str]] = {}
        for ev in self.events:
            if ev.contracts:
                restricted[parse_event_signature(ev.signature).key] = {c.lower() for c in ev.contracts}
        out: list[ContractTarget] = []
        for c in self.contracts:
            if c.network and c.network != self.network.name:
                logger.info("contract_skipped", contract=c.name or c.address, network=c.network,
                            active=self.network.name)
                continue
            keys = {d.key for d in descs}
            if c.events is not None:
                keys &= {self._event_key(e) for e in c.events}
            ids = {c.address.lower(), (c.name or "").lower()}
            keys = {k for k in keys if k not in restricted or restricted[k] & ids}
            everything = c.events is None and all(k in keys for k in (d.key for d in descs))
            out.append(ContractTarget(
                address=Address(c.address),
                name=c.name,
                start_block=c.start_block,
                events=None if everything else tuple(sorted(keys)),
            ))
        return out


DEFAULT_CONFIG: dict[str, Any] = {
    "version": "1.0",
    "environment": "development",
    "api": {"enabled": False, "port": 3000, "host": "localhost", "cors": True},
    "database": {"path": "logs.sqlite", "walMode": True, "queryLogging": False},
    "monitoring": {"progressTracking": True, "performanceMetrics": True, "logLevel": "info",
                   "structuredLogging": False},
    "retry": {"maxRetries": 3, "baseDelay": 1000, "maxDelay": 30000, "strategy": "linear"},
}


# ---------- sources ------------------------------------------------------------

def merge_configs(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    result = dict(base)
    for key, value in override.items():
        if value is None:
            continue
        current = result.get(key)
        if isinstance(value, dict):
            if isinstance(current, str) and key == "network" and "name" not in value:
                current = {"name": current}
            result[key] = merge_configs(current, value) if isinstance(current, dict) else copy.deepcopy(value)
        elif isinstance(value, list):
            result[key] = copy.deepcopy(value)
        else:
            result[key] = value
    return result


def discover_config_file(start_dir: str | Path | None = None) -> Path | None:
    cur = Path(start_dir or os.getcwd()).resolve()
    for d in (cur, *cur.parents):
        for name in CONFIG_FILE_NAMES:
            p = d / name
            if p.is_file():
                return p
        pp = d / "pyproject.toml"
        if pp.is_file():
            try:
                with open(pp, "rb") as f:
                    if "bindexer" in tomllib.load(f).get("tool", {}):
                        return pp
            except tomllib.TOMLDecodeError:
                pass
    return None


def read_config_file(path: str | Path) -> dict[str, Any]:
    p = Path(path)
    if not p.is_file():
        raise ConfigurationError(f"config file not found: {p}", field="configFile")
    try:
        if p.name == "pyproject.toml":
            with open(p, "rb") as f:
                return dict(tomllib.load(f).get("tool", {}).get("bindexer", {}))
        data = json.loads(p.read_text(encoding="utf-8"))
    except (ValueError, tomllib.TOMLDecodeError) as e:
        raise ConfigurationError(f"failed to parse config file {p}: {e}", field="configFile") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"config file {p} must contain a JSON object", field="configFile")
    return data


def parse_env_value(value: str) -> Any:
    if value[:1] in ("{", "[") or value in ("true", "false") or value.isdigit():
        try:
            return json.loads(value)
        except ValueError:
            pass
    if value.lower() in ("true", "false"):
        return value.lower() == "true"
    if re.fullmatch(r"\d*\.\d+", value):
        return float(value)
    return value


def _set_path(obj: dict[str, Any], dotted: str, value: Any) -> None:
    keys = dotted.split(".")
    for k in keys[:-1]:
        if not isinstance(obj.get(k), dict):
            obj[k] = {}
        obj = obj[k]
    obj[keys[-1]] = value


def env_overrides(env: Mapping[str, str] | None = None) -> dict[str, Any]:
    env = os.environ if env is None else env
    out: dict[str, Any] = {}
    for var, dotted in ENV_MAPPING.items():
        if var in env:
            _set_path(out, dotted, parse_env_value(env[var]))
    return out


def env_rpc_url(env: Mapping[str, str] | None = None) -> str | None:
    env = os.environ if env is None else env
    return env.get("RPC_URL") or env.get("BINDEXER_RPC_URL") or None


# ---------- normalize + validate -----------------------------------------------

def normalize(raw: dict[str, Any]) -> dict[str, Any]:
    cfg = copy.deepcopy(raw)
    net = cfg.get("network")
    if isinstance(net, str):
        net = {"name": net}
    if isinstance(net, dict) and net.get("name") in NETWORKS:
        preset = NETWORKS[net["name"]].model_dump(by_alias=True, exclude_none=True)
        net = {**preset, **net}
    if net is not None:
        cfg["network"] = net
    cfg["contracts"] = [
        {"address": c, "name": f"Contract {i + 1}"} if isinstance(c, str) else c
        for i, c in enumerate(cfg.get("contracts") or [])
    ]
    cfg["events"] = [
        {"signature": e, "name": f"Event {i + 1}"} if isinstance(e, str) else e
        for i, e in enumerate(cfg.get("events") or [])
    ]
    if isinstance(cfg.get("api"), bool):
        cfg["api"] = {"enabled": cfg["api"]}
    if isinstance(cfg.get("database"), str):
        cfg["database"] = {"path": cfg["database"]}
    return cfg


def _problems(cfg: dict[str, Any]) -> list[ConfigurationError]:
    errs: list[ConfigurationError] = []
    if not cfg.get("contracts"):
        errs.append(ConfigurationError("at least one contract must be specified", "contracts",
                                       ["add contracts via CLI: -c <address>", "add contracts in the config file"]))
    if not cfg.get("events"):
        errs.append(ConfigurationError("at least one event must be specified", "events",
                                       ['add events via CLI: -e "Transfer(address,address,uint256)"',
                                        "add events in the config file"]))
    net = cfg.get("network")
    if not net:
        errs.append(ConfigurationError("network must be specified", "network",
                                       ["add network via CLI: -n mainnet", "set BINDEXER_NETWORK"]))
    elif isinstance(net, dict) and net.get("name") not in NETWORKS and not net.get("chainId"):
        errs.append(ConfigurationError(f"unknown network: {net.get('name')}", "network",
                                       [f"available networks: {', '.join(NETWORKS)}",
                                        "or give a custom network with name and chainId"]))
    for i, c in enumerate(cfg.get("contracts") or []):
        addr = c.get("address") if isinstance(c, dict) else None
        if not addr:
            errs.append(ConfigurationError(f"contract {i + 1} is missing address", f"contracts[{i}].address"))
        elif not ADDRESS_RE.match(str(addr)):
            errs.append(ConfigurationError(
                f"contract {i + 1} has invalid address format: {addr}", f"contracts[{i}].address",
                ["address must be 0x followed by 40 hex characters"]))
    seen: dict[str, str] = {}
    for i, e in enumerate(cfg.get("events") or []):
        sig = e.get("signature") if isinstance(e, dict) else None
        if not sig:
            errs.append(ConfigurationError(f"event {i + 1} is missing signature", f"events[{i}].signature"))
            continue
        try:
            d = parse_event_signature(sig)
        except ValueError as ex:
            errs.append(ConfigurationError(f"event {i + 1} has invalid signature: {ex}", f"events[{i}].signature",
                                           ["signature must look like EventName(type1,type2,...)"]))
            continue
        if d.key in seen and seen[d.key] != d.signature:
            errs.append(ConfigurationError(
                f"events {seen[d.key]} and {d.signature} would share table {d.table_name}",
                f"events[{i}].signature", ["give each event type a distinct name"]))
        seen.setdefault(d.key, d.signature)
    return errs


def _fail(errs: list[ConfigurationError]) -> ConfigurationError:
    if len(errs) == 1:
        return errs[0]
    body = "\n\n".join(e.describe() for e in errs)
    return ConfigurationError(f"configuration validation failed:\n\n{body}",
                              suggestions=[s for e in errs for s in e.suggestions])


def validate(raw: dict[str, Any]) -> IndexerConfig:
    cfg = normalize(raw)
    errs = _problems(cfg)
    if errs:
        raise _fail(errs)
    try:
        return IndexerConfig.model_validate(cfg)
    except ValidationError as e:
        raise _fail([
            ConfigurationError(err["msg"], ".".join(str(p) for p in err["loc"]))
            for err in e.errors()
        ]) from e


def load_config(
    path: str | Path | None = None,
    *,
    overrides: Mapping[str, Any] | None = None,
    profile: str | None = None,
    env: Mapping[str, str] | None = None,
    start_dir: str | Path | None = None,
) -> IndexerConfig:
    raw: dict[str, Any] = copy.deepcopy(DEFAULT_CONFIG)
    cfg_path = Path(path) if path else discover_config_file(start_dir)
    if cfg_path is not None:
        raw = merge_configs(raw, read_config_file(cfg_path))
        logger.debug("config_file", path=str(cfg_path))
    raw = merge_configs(raw, env_overrides(env))
    if overrides:
        raw = merge_configs(raw, overrides)
    if profile:
        profiles = raw.get("profiles") or {}
        if profile not in profiles:
            raise ConfigurationError(f"unknown profile: {profile}", "profile",
                                     [f"available profiles: {', '.join(profiles) or '(none)'}"])
        raw = merge_configs(raw, profiles[profile])
    # an RPC endpoint from the environment wins whichever network was selected
    rpc = env_rpc_url(env)
    if rpc:
        raw = merge_configs(raw, {"network": {"rpcUrl": rpc}})
    cfg = validate(raw)
    cfg.config_path = str(cfg_path) if cfg_path else None
    cfg.profile = profile
    return cfg


def generate_default_config(template: str | None = None) -> dict[str, Any]:
    """A starter config document (camelCase keys, ready to dump as JSON)."""
    if template:
        t = get_template(template)
        if t is None:
            raise ConfigurationError(f"unknown template: {template}", "template",
                                     [f"available templates: {', '.join(template_names())}"])
        return copy.deepcopy(t.config)
    return {
        "version": "1.0",
        "project": "my-blockchain-indexer",
        "environment": "development",
        "network": "sepolia",
        "contracts": [{"address": "0x0000000000000000000000000000000000000000", "name": "MyContract",
                       "events": ["Transfer", "Approval"]}],
        "events": [
            {"signature": "Transfer(address indexed from, address indexed to, uint256 value)", "name": "Transfer"},
            {"signature": "Approval(address indexed owner, address indexed spender, uint256 value)",
             "name": "Approval"},
        ],
        "startBlock": 1_000_000,
        "api": {"enabled": True, "port": 3000, "cors": True},
        "database": {"path": "logs.sqlite", "walMode": True},
        "monitoring": {"progressTracking": True, "logLevel": "info"},
        "retry": {"maxRetries": 3, "baseDelay": 1000, "maxDelay": 30000, "strategy": "linear"},
    }
