"""Dataflow Model Backends - Prediction Serving Transports.

Copyright (c) 2024-2026 BlackRoad OS, Inc. All rights reserved.
"""

from __future__ import annotations

import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

import httpx

from dataflow_core.config import ModelStoreConfig
from dataflow_core.model.types import ModelDeployment, PredictionOptions
from dataflow_core.utils.hashing import unit_hash

logger = logging.getLogger(__name__)


@dataclass
class PredictionOutput:
    """Backend prediction output.

    Attributes:
        output: Model output
        confidence: Confidence in [0, 1]
        explanation: Optional explanation payload
    """

    output: Any
    confidence: float
    explanation: Optional[Dict[str, Any]] = None


class PredictionBackend(ABC):
    """Serving transport for deployed models."""

    name = "backend"

    @abstractmethod
    async def deploy(self, deployment: ModelDeployment) -> str:
        """Provision serving for a deployment and return its endpoint."""

    @abstractmethod
    async def predict(
        self,
        deployment: ModelDeployment,
        input: Any,
        version: str,
        options: PredictionOptions,
    ) -> PredictionOutput:
        """Run one prediction against a deployment."""

    @abstractmethod
    async def check_health(self, deployment: ModelDeployment) -> bool:
        """Return True if the deployment's endpoint is healthy."""

    async def close(self) -> None:
        pass


class HttpPredictionBackend(PredictionBackend):
    """Remote serving over HTTP.

    Endpoints follow ``{base_url}/models/{model_id}/versions/{version}/predict``;
    requests carry ``{"instances": [input], "options": {...}}`` and
    responses ``{"predictions": [{"output": ..., "confidence": ...}]}``.
    """

    name = "remote"

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize backend.

        Args:
            base_url: Serving base URL
            timeout: Default request timeout in seconds
            client: Shared client (one is created when omitted)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None

    def endpoint_for(self, model_id: str, version: str) -> str:
        return f"{self.base_url}/models/{model_id}/versions/{version}/predict"

    async def deploy(self, deployment: ModelDeployment) -> str:
        return self.endpoint_for(deployment.model_id, deployment.version)

    async def predict(
        self,
        deployment: ModelDeployment,
        input: Any,
        version: str,
        options: PredictionOptions,
    ) -> PredictionOutput:
        endpoint = (
            deployment.endpoint if version == deployment.version
            else self.endpoint_for(deployment.model_id, version)
        )
        response = await self._client.post(
            endpoint,
            json={
                "instances": [input],
                "options": {"version": version, "explain": options.explain},
            },
            timeout=options.timeout or self.timeout,
        )
        response.raise_for_status()

        prediction = response.json()["predictions"][0]
        if not isinstance(prediction, dict):
            return PredictionOutput(output=prediction, confidence=0.0)
        return PredictionOutput(
            output=prediction.get("output", prediction),
            confidence=float(prediction.get("confidence", 0.0)),
            explanation=prediction.get("explanation"),
        )

    async def check_health(self, deployment: ModelDeployment) -> bool:
        try:
            response = await self._client.get(
                f"{deployment.endpoint}/health", timeout=self.timeout
            )
        except httpx.HTTPError as e:
            logger.warning(f"Health check failed for {deployment.id}: {e}")
            return False
        return response.status_code == 200

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


Predictor = Callable[[Any], Any]


class LocalPredictionBackend(PredictionBackend):
    """In-process inference.

    Predictors registered per model (optionally per version) are called
    with the input and may return a PredictionOutput, an
    ``(output, confidence)`` pair, or a dict with those keys. Models with
    no predictor get a deterministic score derived from the input hash.
    """

    name = "local"

    def __init__(self):
        self._predictors: Dict[Tuple[str, Optional[str]], Predictor] = {}

    def register_predictor(
        self,
        model_id: str,
        predictor: Predictor,
        version: Optional[str] = None,
    ) -> None:
        self._predictors[(model_id, version)] = predictor

    async def deploy(self, deployment: ModelDeployment) -> str:
        return f"local://{deployment.model_id}/{deployment.version}"

    async def predict(
        self,
        deployment: ModelDeployment,
        input: Any,
        version: str,
        options: PredictionOptions,
    ) -> PredictionOutput:
        predictor = (
            self._predictors.get((deployment.model_id, version))
            or self._predictors.get((deployment.model_id, None))
        )
        if predictor is None:
            score = unit_hash([deployment.model_id, version, input])
            return PredictionOutput(
                output={"score": score, "label": score >= 0.5},
                confidence=score,
            )

        result = predictor(input)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, PredictionOutput):
            return result
        if isinstance(result, tuple):
            output, confidence = result
            return PredictionOutput(output=output, confidence=float(confidence))
        if isinstance(result, dict) and "confidence" in result:
            return PredictionOutput(
                output=result.get("output"),
                confidence=float(result["confidence"]),
                explanation=result.get("explanation"),
            )
        return PredictionOutput(output=result, confidence=1.0)

    async def check_health(self, deployment: ModelDeployment) -> bool:
        return True


def create_prediction_backend(
    config: ModelStoreConfig,
    client: Optional[httpx.AsyncClient] = None,
) -> PredictionBackend:
    """Select the serving backend named by configuration."""
    if config.serving_transport == "http":
        return HttpPredictionBackend(
            config.serving_base_url, timeout=config.prediction_timeout, client=client
        )
    return LocalPredictionBackend()


__all__ = [
    "PredictionOutput",
    "PredictionBackend",
    "HttpPredictionBackend",
    "LocalPredictionBackend",
    "create_prediction_backend",
]
