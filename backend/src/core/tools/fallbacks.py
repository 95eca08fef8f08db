"""
Local fallback stubs for tool operations.

A stub answers when its backend is disconnected or the live call failed.
Stubs are deterministic and read-only; operations that change
infrastructure never get one.
"""

import inspect
from collections.abc import Awaitable, Callable
from typing import Any, Optional, Union

FallbackFn = Callable[[dict[str, Any]], Union[Any, Awaitable[Any]]]

TERRAFORM_BACKEND = "terraform-tool"
CLOUD_BACKEND = "aws-tool"
SOURCE_CONTROL_BACKEND = "github-tool"


class FallbackRegistry:
    """Stubs keyed by (backend, operation)."""

    def __init__(self) -> None:
        self._stubs: dict[tuple[str, str], FallbackFn] = {}

    def register(self, backend: str, operation: str, fn: FallbackFn) -> None:
        self._stubs[(backend, operation)] = fn

    def get(self, backend: str, operation: str) -> Optional[FallbackFn]:
        return self._stubs.get((backend, operation))

    def operations_for(self, backend: str) -> list[str]:
        return sorted(op for (name, op) in self._stubs if name == backend)

    async def run(self, backend: str, operation: str, params: dict[str, Any]) -> Any:
        fn = self._stubs[(backend, operation)]
        result = fn(params)
        if inspect.isawaitable(result):
            result = await result
        return result


# ==========================================================================
# Infra-as-code stubs
# ==========================================================================

def terraform_provider_docs(params: dict[str, Any]) -> dict[str, Any]:
    return {
        "success": True,
        "fallback": True,
        "message": "Using cached data for provider documentation",
        "documentation": {
            "provider": params.get("provider", "aws"),
            "resource": params.get("resource"),
            "note": "Documentation fetched from fallback. Some details may be outdated.",
        },
    }


def terraform_search_modules(params: dict[str, Any]) -> dict[str, Any]:
    return {
        "success": True,
        "fallback": True,
        "query": params.get("query"),
        "modules": [],
        "message": "Module search unavailable. Refer to the Terraform Registry.",
    }


def terraform_module_info(params: dict[str, Any]) -> dict[str, Any]:
    return {
        "success": True,
        "fallback": True,
        "module": params.get("module"),
        "message": "Module info unavailable. Refer to the Terraform Registry directly.",
    }


def terraform_sentinel_policies(params: dict[str, Any]) -> dict[str, Any]:
    return {
        "success": True,
        "fallback": True,
        "policies": [],
        "message": "Sentinel policies unavailable. Using default security practices.",
    }


# ==========================================================================
# Cloud inspection stubs
# ==========================================================================

def cloud_describe_resources(params: dict[str, Any]) -> dict[str, Any]:
    return {
        "success": False,
        "fallback": True,
        "resources": [],
        "resource_type": params.get("resource_type"),
        "message": "Resource description unavailable",
    }


def cloud_estimate_cost(params: dict[str, Any]) -> dict[str, Any]:
    return {
        "success": True,
        "fallback": True,
        "estimate": {
            "total_monthly_cost": 0,
            "resources": len(params.get("resources") or []),
            "message": "Cost estimation unavailable. Manual estimation required.",
        },
    }


def cloud_service_quotas(params: dict[str, Any]) -> dict[str, Any]:
    return {
        "success": True,
        "fallback": True,
        "quotas": {service: None for service in params.get("services") or []},
        "message": "Service quota check unavailable",
    }


# ==========================================================================
# Source control stubs
# ==========================================================================

def source_read_repository(params: dict[str, Any]) -> dict[str, Any]:
    return {
        "success": False,
        "fallback": True,
        "repository": {"owner": params.get("owner"), "repo": params.get("repo")},
        "message": "Repository read unavailable",
    }


def source_read_file(params: dict[str, Any]) -> dict[str, Any]:
    return {
        "success": False,
        "fallback": True,
        "path": params.get("path"),
        "content": None,
        "message": "File read unavailable",
    }


DEFAULT_FALLBACKS: dict[tuple[str, str], FallbackFn] = {
    (TERRAFORM_BACKEND, "get_provider_docs"): terraform_provider_docs,
    (TERRAFORM_BACKEND, "search_modules"): terraform_search_modules,
    (TERRAFORM_BACKEND, "get_module_info"): terraform_module_info,
    (TERRAFORM_BACKEND, "get_sentinel_policies"): terraform_sentinel_policies,
    (CLOUD_BACKEND, "describe_resources"): cloud_describe_resources,
    (CLOUD_BACKEND, "estimate_cost"): cloud_estimate_cost,
    (CLOUD_BACKEND, "check_service_quotas"): cloud_service_quotas,
    (SOURCE_CONTROL_BACKEND, "read_repository"): source_read_repository,
    (SOURCE_CONTROL_BACKEND, "read_file"): source_read_file,
}


def register_default_fallbacks(registry: FallbackRegistry) -> FallbackRegistry:
    for (backend, operation), fn in DEFAULT_FALLBACKS.items():
        registry.register(backend, operation, fn)
    return registry
