# Copyright (c) Syntropy Systems
"""HTTP client for reporting to the coordinator."""
from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, TypeVar, cast, overload
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ValidationError
from typing_extensions import Self

from labhand.errors import ReportingError
from labhand.models.api import ErrorResponse, MachineIdentity, StatusReport

if TYPE_CHECKING:
    from collections.abc import Mapping
    from types import TracebackType

    from labhand.models.api import ExperimentStatusValue, MachineSpec
    from labhand.models.base import JSONObject

ResponseModel = TypeVar("ResponseModel", bound=BaseModel)


def _experiment_path(experiment_id: str, action: str = "") -> str:
    path = f"/api/experiments/{quote(experiment_id, safe='')}"
    return f"{path}/{action}" if action else path


class _HttpxResponse(Protocol):
    content: bytes

    def raise_for_status(self) -> _HttpxResponse:
        ...

    def json(self) -> object:
        ...


class _HttpxClient(Protocol):
    def request(
        self,
        *,
        method: str,
        url: str,
        json: Mapping[str, object] | None = None,
    ) -> _HttpxResponse:
        ...

    def close(self) -> None:
        ...


class CoordinatorClient:
    """HTTP client for the coordinator's machine and experiment endpoints."""

    base_url: str
    timeout: float
    _client: _HttpxClient

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Base URL of the coordinator (e.g., "http://lab-host:5080")
            timeout: Request timeout in seconds
            transport: Optional httpx transport, mainly for tests

        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        client = cast("object", httpx.Client(timeout=timeout, transport=transport))
        self._client = cast("_HttpxClient", client)

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> Self:
        """Enter the client context and return self."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Exit the client context and close the HTTP client."""
        self.close()

    @overload
    def _request(
        self,
        method: str,
        path: str,
        json: Mapping[str, object] | None = None,
        *,
        response_model: type[ResponseModel],
    ) -> ResponseModel:
        ...

    @overload
    def _request(
        self,
        method: str,
        path: str,
        json: Mapping[str, object] | None = None,
        *,
        response_model: None = None,
    ) -> None:
        ...

    def _request(
        self,
        method: str,
        path: str,
        json: Mapping[str, object] | None = None,
        *,
        response_model: type[ResponseModel] | None = None,
    ) -> ResponseModel | None:
        """Make an HTTP request to the coordinator."""
        url = f"{self.base_url}{path}"
        try:
            response = self._client.request(method=method, url=url, json=json)
            _ = response.raise_for_status()
            if response_model is None:
                return None
            return response_model.model_validate(response.json())
        except httpx.HTTPStatusError as e:
            # Try to get error detail from response
            try:
                detail = ErrorResponse.model_validate(e.response.json()).detail
            except (ValidationError, ValueError):
                detail = str(e)
            msg = f"Coordinator error on {method} {path}: {detail}"
            raise ReportingError(msg) from e
        except httpx.RequestError as e:
            msg = f"Connection error on {method} {path}: {e}"
            raise ReportingError(msg) from e
        except (ValidationError, ValueError) as e:
            msg = f"Unexpected response to {method} {path}: {e}"
            raise ReportingError(msg) from e

    # --- Machine Operations ---

    def register_machine(self, spec: MachineSpec) -> MachineIdentity:
        """Register this machine with the coordinator.

        Args:
            spec: Hardware inventory of this machine

        Returns:
            The machine document as stored by the coordinator

        """
        return self._request(
            "POST",
            "/api/machines",
            json=spec.model_dump(mode="json"),
            response_model=MachineIdentity,
        )

    # --- Experiment Operations ---

    def mark_started(self, experiment_id: str) -> None:
        """Tell the coordinator the experiment is running."""
        self._request("PUT", _experiment_path(experiment_id, "started"))

    def report_result(self, experiment_id: str, payload: JSONObject) -> None:
        """Send one parsed result document for the experiment."""
        self._request("PUT", _experiment_path(experiment_id), json=payload)

    def report_status(self, experiment_id: str, status: ExperimentStatusValue) -> None:
        """Send the experiment's terminal status."""
        report = StatusReport(status=status)
        self._request(
            "PUT",
            _experiment_path(experiment_id),
            json=report.model_dump(mode="json"),
        )

    def mark_finished(self, experiment_id: str) -> None:
        """Tell the coordinator the experiment is done."""
        self._request("PUT", _experiment_path(experiment_id, "finished"))
