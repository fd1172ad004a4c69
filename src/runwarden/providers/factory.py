"""Factory for creating LangChain chat models behind the generation capability.

Uses LangChain's init_chat_model abstraction for unified provider instantiation.
Provider-specific logic (credential lookup, Ollama context detection) is
applied as pre-processing before the unified call.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any

from runwarden.observability.logging import get_logger
from runwarden.providers.base import GenerationModelError

if TYPE_CHECKING:
    from langchain_core.language_models import BaseChatModel

log = get_logger(__name__)

# Provider default models - None means model must be explicitly specified
PROVIDER_DEFAULTS: dict[str, str | None] = {
    "ollama": None,
    "openai": "gpt-4o-mini",
    "anthropic": "claude-sonnet-4-20250514",
    "google": "gemini-2.5-flash",
}

_KNOWN_PROVIDERS = frozenset(PROVIDER_DEFAULTS)

_API_KEY_ENV: dict[str, str] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "google": "GOOGLE_API_KEY",
}


def get_default_model(provider_name: str) -> str | None:
    """Get the default model for a provider, or None if one must be given."""
    return PROVIDER_DEFAULTS.get(normalize_provider(provider_name))


def parse_model_string(value: str) -> tuple[str, str]:
    """Split a ``provider/model`` string.

    A bare provider name resolves to that provider's default model.

    Raises:
        GenerationModelError: If no model can be determined.
    """
    if "/" in value:
        provider, model = value.split("/", 1)
        return normalize_provider(provider), model

    provider = normalize_provider(value)
    model = get_default_model(provider)
    if model is None:
        raise GenerationModelError(provider, f"No default model for provider '{provider}'")
    return provider, model


def create_chat_model(
    provider_name: str,
    model: str,
    **kwargs: Any,
) -> BaseChatModel:
    """Create a LangChain BaseChatModel.

    Args:
        provider_name: Provider identifier (ollama, openai, anthropic, google).
        model: Model name/identifier.
        **kwargs: Additional provider-specific options.

    Returns:
        Configured BaseChatModel.

    Raises:
        GenerationModelError: If the provider is unknown, misconfigured or
            its integration package is not installed.
    """
    provider = normalize_provider(provider_name)

    if provider not in _KNOWN_PROVIDERS:
        log.error("provider_unknown", provider=provider)
        raise GenerationModelError(provider, f"Unknown provider: {provider}")

    kwargs = _preprocess_provider_kwargs(provider, model, kwargs)

    try:
        chat_model = _init_chat_model(_map_provider_for_init(provider), model, **kwargs)
    except ImportError as e:
        package = _get_package_for_provider(provider)
        log.error("provider_import_error", provider=provider, package=package)
        raise GenerationModelError(provider, f"{package} not installed. Run: pip install {package}") from e

    log.info("chat_model_created", provider=provider, model=model)
    return chat_model


def _init_chat_model(provider: str, model: str, **kwargs: Any) -> BaseChatModel:
    from langchain.chat_models import init_chat_model

    result: BaseChatModel = init_chat_model(model=model, model_provider=provider, **kwargs)
    return result


def _preprocess_provider_kwargs(
    provider: str,
    model: str,
    kwargs: dict[str, Any],
) -> dict[str, Any]:
    """Resolve credentials and endpoints from kwargs or the environment.

    Raises:
        GenerationModelError: If required configuration is missing.
    """
    kwargs = dict(kwargs)

    if provider == "ollama":
        host = kwargs.pop("host", None) or os.getenv("OLLAMA_HOST")
        if not host:
            log.error("provider_config_error", provider="ollama", missing="OLLAMA_HOST")
            raise GenerationModelError(
                "ollama",
                "OLLAMA_HOST not configured. Set OLLAMA_HOST environment variable.",
            )
        kwargs["base_url"] = host
        if "num_ctx" not in kwargs:
            kwargs["num_ctx"] = _query_ollama_num_ctx(host, model) or 32_768
        return kwargs

    env_var = _API_KEY_ENV[provider]
    api_key = kwargs.pop("google_api_key", None) or kwargs.get("api_key") or os.getenv(env_var)
    if not api_key:
        log.error("provider_config_error", provider=provider, missing=env_var)
        raise GenerationModelError(provider, f"API key required. Set {env_var} environment variable.")
    kwargs["api_key"] = api_key
    return kwargs


def _map_provider_for_init(provider: str) -> str:
    # init_chat_model expects 'google_genai' not 'google'
    if provider == "google":
        return "google_genai"
    return provider


def _get_package_for_provider(provider: str) -> str:
    packages = {
        "ollama": "langchain-ollama",
        "openai": "langchain-openai",
        "anthropic": "langchain-anthropic",
        "google": "langchain-google-genai",
    }
    return packages.get(provider, f"langchain-{provider}")


def normalize_provider(provider_name: str) -> str:
    """Normalize a provider name, resolving aliases ("gemini" -> "google")."""
    name = provider_name.strip().lower()
    if name == "gemini":
        return "google"
    return name


def _query_ollama_num_ctx(host: str, model: str) -> int | None:
    """Query Ollama /api/show for the model's configured num_ctx.

    Returns:
        The num_ctx value, or None if the query fails or the value is absent.
    """
    import httpx

    try:
        with httpx.Client(timeout=10.0) as client:
            resp = client.post(f"{host}/api/show", json={"model": model})
            resp.raise_for_status()
            data = resp.json()
    except Exception as exc:
        log.warning("ollama_show_failed", model=model, error=str(exc))
        return None

    for line in data.get("parameters", "").splitlines():
        parts = line.split()
        if len(parts) >= 2 and parts[0] == "num_ctx":
            try:
                return int(parts[-1])
            except ValueError:
                pass

    for key, value in data.get("model_info", {}).items():
        if key.endswith(".context_length") and isinstance(value, int):
            return value

    return None
