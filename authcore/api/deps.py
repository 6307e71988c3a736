from __future__ import annotations

import functools
import inspect
from typing import Any, Awaitable, Callable, Optional

from fastapi import Header, Request

from authcore.service.authorization import AccessPolicy, Principal
from authcore.service.runtime import get_runtime

Operation = Callable[..., Awaitable[Any]]


def _find_request(args: tuple, kwargs: dict) -> Request:
    for value in list(kwargs.values()) + list(args):
        if isinstance(value, Request):
            return value
    raise TypeError("protected operations must accept a `request: Request` parameter")


async def _authenticate(request: Request) -> Principal:
    principal = getattr(request.state, "principal", None)
    if isinstance(principal, Principal):
        return principal
    principal = await get_runtime().guard.authenticate(request.headers.get("Authorization"))
    request.state.principal = principal
    return principal


def _with_resolved_signature(wrapper: Operation, operation: Operation) -> Operation:
    # FastAPI resolves string annotations against the wrapper module globals
    wrapper.__signature__ = inspect.signature(operation, eval_str=True)
    return wrapper


def path_param(name: str) -> Callable[[Request], Optional[str]]:
    """Derive a resource's owning tenant from a path parameter."""

    def _extract(request: Request) -> Optional[str]:
        return request.path_params.get(name)

    return _extract


def wrap_with_auth(operation: Operation) -> Operation:
    """Run the authentication state machine before ``operation``.

    The verified principal is attached as ``request.state.principal``.
    """

    @functools.wraps(operation)
    async def wrapper(*args, **kwargs):
        await _authenticate(_find_request(args, kwargs))
        return await operation(*args, **kwargs)

    return _with_resolved_signature(wrapper, operation)


def wrap_with_role(operation: Operation, policy: AccessPolicy) -> Operation:
    """Evaluate ``policy`` against the authenticated principal before ``operation``."""

    @functools.wraps(operation)
    async def wrapper(*args, **kwargs):
        request = _find_request(args, kwargs)
        principal = await _authenticate(request)
        resource_tenant_id = None
        if policy.resource_tenant_from is not None:
            resource_tenant_id = policy.resource_tenant_from(request)
        get_runtime().guard.authorize(principal, policy, resource_tenant_id=resource_tenant_id)
        return await operation(*args, **kwargs)

    return _with_resolved_signature(wrapper, operation)


async def get_principal(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> Principal:
    """FastAPI dependency form of ``wrap_with_auth``."""
    return await _authenticate(request)


def client_address(request: Request) -> Optional[str]:
    return request.client.host if request.client else None
