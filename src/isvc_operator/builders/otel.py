"""OpenTelemetry sidecar collector feeding pod metrics to KEDA."""

from __future__ import annotations

from typing import Any

from isvc_operator.builders.common import object_meta, owner_labels
from isvc_operator.builders.pod import DEFAULT_HTTP_PORT
from isvc_operator.clients.base import CRDs
from isvc_operator.domains.inference.config import InferenceServiceConfig
from isvc_operator.domains.inference.models import ComponentType, InferenceService


def build_otel_collector(
    isvc: InferenceService,
    component: ComponentType,
    name: str,
    metric_names: list[str],
    config: InferenceServiceConfig,
) -> dict[str, Any]:
    """Sidecar collector scraping the serving port and exporting over OTLP.

    Pods opt in through the sidecar-inject annotation naming this collector.
    """
    otel = config.otel_collector
    processors: dict[str, Any] = {}
    pipeline: dict[str, Any] = {"receivers": ["prometheus"], "exporters": ["otlp"]}
    if metric_names:
        processors["filter/metrics"] = {
            "metrics": {"include": {"match_type": "strict", "metric_names": list(metric_names)}}
        }
        pipeline["processors"] = ["filter/metrics"]

    collector_config: dict[str, Any] = {
        "receivers": {
            "prometheus": {
                "config": {
                    "scrape_configs": [
                        {
                            "job_name": "otel-collector",
                            "scrape_interval": otel.scrape_interval,
                            "static_configs": [{"targets": [f"localhost:{DEFAULT_HTTP_PORT}"]}],
                        }
                    ]
                }
            }
        },
        "exporters": {
            "otlp": {
                "endpoint": otel.metric_receiver_endpoint,
                "compression": "none",
                "tls": {"insecure": True},
            }
        },
        "service": {"pipelines": {"metrics": pipeline}},
    }
    if processors:
        collector_config["processors"] = processors

    return {
        "apiVersion": CRDs.OTEL_COLLECTOR.api_version,
        "kind": CRDs.OTEL_COLLECTOR.kind,
        "metadata": object_meta(isvc, name, owner_labels(isvc, component, name)),
        "spec": {"mode": "sidecar", "config": collector_config},
    }
