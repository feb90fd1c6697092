"""
config.py - Daemon configuration.

Two sources:
 - environment variables, parsed into DaemonConfig (command-line flags
   given to ``server.main`` override them)
 - a data directory describing what this daemon serves:
       providers.json               {tag: {details, owner_private_key | owner_address,
                                           operator_private_key}}
       product-categories/*.json    {address, details, backend, backend_options}
       offers/*.json                {id, product_category, provider, deployment_params, details}

Every validation failure is raised as ConfigError naming its source.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from eth_account import Account
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from provider_daemon.errors import ConfigError

DEFAULT_BACKEND = "provider_daemon.backends.example:ExampleBackend"

_ENV_FIELDS = (
    "database_path",
    "data_dir",
    "rpc_url",
    "chain_id",
    "registry_address",
    "extra_contract_addresses",
    "log_level",
    "api_host",
    "api_port",
    "sweep_interval",
    "deploy_poll_interval",
    "block_poll_interval",
    "retry_interval",
    "deploy_timeout",
)


def _format_error(e: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'value'}: {err['msg']}" for err in e.errors()
    )


def _key_to_address(private_key: str) -> str:
    try:
        return Account.from_key(private_key).address.lower()
    except Exception as e:
        raise ValueError(f"invalid private key ({e.__class__.__name__})") from e


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------

class DaemonConfig(BaseModel):
    database_path: str = "data/provider.db"
    data_dir: str = "data"
    rpc_url: Optional[str] = None
    chain_id: Optional[int] = None
    registry_address: Optional[str] = None
    extra_contract_addresses: List[str] = Field(default_factory=list)
    log_level: str = "INFO"
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    sweep_interval: float = Field(60.0, gt=0)
    deploy_poll_interval: float = Field(5.0, gt=0)
    block_poll_interval: float = Field(3.0, gt=0)
    retry_interval: float = Field(5.0, gt=0)
    deploy_timeout: Optional[float] = Field(None, gt=0)
    simulate: bool = False

    @field_validator("extra_contract_addresses", mode="before")
    @classmethod
    def _split_addresses(cls, value):
        if isinstance(value, str):
            value = value.split(",")
        return [str(v).strip().lower() for v in value if str(v).strip()]

    @field_validator("registry_address")
    @classmethod
    def _lower_address(cls, value):
        return value.lower() if value else value

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        level = value.upper()
        if level == "WARN":
            level = "WARNING"
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {value!r}")
        return level

    @model_validator(mode="after")
    def _check_ledger(self):
        if not self.simulate and not self.rpc_url:
            raise ValueError("RPC_URL is required unless running with --simulate")
        if not self.simulate and not self.registry_address:
            raise ValueError("REGISTRY_ADDRESS is required unless running with --simulate")
        return self

    @property
    def log_level_value(self) -> int:
        return getattr(logging, self.log_level)

    @classmethod
    def load(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "DaemonConfig":
        """Build the config from the environment, then apply non-None overrides."""
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for name in _ENV_FIELDS:
            raw = environ.get(name.upper())
            if raw is not None and raw != "":
                values[name] = raw
        values.update({k: v for k, v in overrides.items() if v is not None})
        try:
            return cls.model_validate(values)
        except ValidationError as e:
            raise ConfigError(f"Invalid environment: {_format_error(e)}") from e


# ---------------------------------------------------------------------------
# Data directory
# ---------------------------------------------------------------------------

class ProviderConfig(BaseModel):
    tag: str
    details: Dict[str, Any] = Field(default_factory=dict)
    owner_private_key: Optional[str] = None
    owner_address: Optional[str] = None
    operator_private_key: Optional[str] = None
    operator_address: str = ""

    @model_validator(mode="after")
    def _derive_addresses(self):
        if self.owner_private_key:
            derived = _key_to_address(self.owner_private_key)
            if self.owner_address and self.owner_address.lower() != derived:
                raise ValueError("owner_address does not match owner_private_key")
            self.owner_address = derived
        if not self.owner_address:
            raise ValueError("owner_private_key or owner_address is required")
        self.owner_address = self.owner_address.lower()
        if self.operator_private_key:
            self.operator_address = _key_to_address(self.operator_private_key)
        self.operator_address = self.operator_address.lower()
        return self


class ProductCategoryConfig(BaseModel):
    address: str
    details: Dict[str, Any] = Field(default_factory=dict)
    backend: str = DEFAULT_BACKEND
    backend_options: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("address")
    @classmethod
    def _lower(cls, value: str) -> str:
        if not value.startswith("0x"):
            raise ValueError("address must start with '0x'")
        return value.lower()


class OfferConfig(BaseModel):
    id: int = Field(ge=0)
    product_category: str
    provider: str
    deployment_params: Any = None
    details: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("product_category")
    @classmethod
    def _lower(cls, value: str) -> str:
        return value.lower()


class DataConfig(BaseModel):
    providers: Dict[str, ProviderConfig] = Field(default_factory=dict)
    product_categories: Dict[str, ProductCategoryConfig] = Field(default_factory=dict)
    offers: List[OfferConfig] = Field(default_factory=list)

    def provider_owners(self) -> List[str]:
        return sorted(p.owner_address for p in self.providers.values())

    def category_addresses(self) -> List[str]:
        return sorted(self.product_categories)


def _read_json(path: Path):
    try:
        with open(path) as f:
            return json.load(f)
    except FileNotFoundError:
        raise ConfigError(f"{path}: file not found")
    except json.JSONDecodeError as e:
        raise ConfigError(f"{path}: invalid JSON ({e})") from e


def _json_files(directory: Path) -> List[Path]:
    if not directory.is_dir():
        return []
    return sorted(p for p in directory.rglob("*.json") if p.is_file())


def load_providers(path: Path) -> Dict[str, ProviderConfig]:
    raw = _read_json(path)
    if not isinstance(raw, dict):
        raise ConfigError(f"{path}: expected an object keyed by provider tag")
    providers = {}
    for tag, info in raw.items():
        if not isinstance(info, dict):
            raise ConfigError(f"{path}: provider {tag!r} must be an object")
        try:
            providers[tag] = ProviderConfig.model_validate({**info, "tag": tag})
        except ValidationError as e:
            raise ConfigError(f"{path}: provider {tag!r}: {_format_error(e)}") from e
    return providers


def load_product_categories(directory: Path) -> Dict[str, ProductCategoryConfig]:
    categories = {}
    for path in _json_files(directory):
        try:
            category = ProductCategoryConfig.model_validate(_read_json(path))
        except ValidationError as e:
            raise ConfigError(f"{path}: {_format_error(e)}") from e
        categories[category.address] = category
    return categories


def load_offers(directory: Path) -> List[OfferConfig]:
    offers = []
    for path in _json_files(directory):
        try:
            offers.append(OfferConfig.model_validate(_read_json(path)))
        except ValidationError as e:
            raise ConfigError(f"{path}: {_format_error(e)}") from e
    return offers


def load_data_dir(data_dir) -> DataConfig:
    """Read and cross-check providers, product categories and offers."""
    base = Path(data_dir)
    providers = load_providers(base / "providers.json")
    if not providers:
        raise ConfigError(f"{base / 'providers.json'}: no providers configured")
    categories = load_product_categories(base / "product-categories")
    if not categories:
        raise ConfigError(f"{base / 'product-categories'}: no product categories configured")
    offers = load_offers(base / "offers")

    for offer in offers:
        if offer.product_category not in categories:
            raise ConfigError(
                f"Offer #{offer.id} references unknown product category {offer.product_category}"
            )
        if offer.provider not in providers:
            raise ConfigError(f"Offer #{offer.id} references unknown provider {offer.provider!r}")

    return DataConfig(providers=providers, product_categories=categories, offers=offers)
