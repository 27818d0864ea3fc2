"""Tests for HTTPRoute and Ingress bodies."""

from collections.abc import Callable

from isvc_operator.builders.routing import (
    build_component_http_route,
    build_component_ingress,
    build_top_level_http_route,
    build_top_level_ingress,
    entry_component,
    hosts_for,
    path_route,
)
from isvc_operator.builders.service import build_headless_service, build_service
from isvc_operator.domains.inference.config import InferenceServiceConfig
from isvc_operator.domains.inference.models import ComponentType, InferenceService

TRANSFORMER = {"containers": [{"name": "t", "image": "kserve/transformer"}]}
EXPLAINER = {"containers": [{"name": "e", "image": "kserve/explainer"}], "timeout": 90}


class TestHosts:
    """Test host and path derivation."""

    def test_hosts_with_additional_domains(
        self, make_isvc: Callable[..., InferenceService]
    ) -> None:
        config = InferenceServiceConfig.from_config_map(
            {
                "ingress": (
                    '{"ingressDomain": "example.com", '
                    '"additionalIngressDomains": ["example.org", "example.com"]}'
                )
            }
        )
        assert hosts_for(make_isvc(), "sklearn-iris", config) == [
            "sklearn-iris-default.example.com",
            "sklearn-iris-default.example.org",
        ]

    def test_path_template(self, make_isvc: Callable[..., InferenceService]) -> None:
        config = InferenceServiceConfig.from_config_map(
            {"ingress": '{"pathTemplate": "/serving/{{ .Namespace }}/{{ .Name }}"}'}
        )
        assert path_route(make_isvc(), config) == ("example.com", "/serving/default/sklearn-iris")

    def test_path_template_with_host(self, make_isvc: Callable[..., InferenceService]) -> None:
        config = InferenceServiceConfig.from_config_map(
            {"ingress": '{"pathTemplate": "http://models.example.com/{{ .Name }}/"}'}
        )
        assert path_route(make_isvc(), config) == ("models.example.com", "/sklearn-iris")

    def test_no_path_template(
        self, make_isvc: Callable[..., InferenceService], serving_config: InferenceServiceConfig
    ) -> None:
        assert path_route(make_isvc(), serving_config) is None

    def test_entry_component(self, make_isvc: Callable[..., InferenceService]) -> None:
        assert entry_component(make_isvc()) == ComponentType.PREDICTOR
        assert entry_component(make_isvc(transformer=TRANSFORMER)) == ComponentType.TRANSFORMER


class TestHttpRoute:
    """Test Gateway API routes."""

    def test_top_level_route(
        self, make_isvc: Callable[..., InferenceService], gateway_config: InferenceServiceConfig
    ) -> None:
        """Test a predictor-only route with default timeout."""
        route = build_top_level_http_route(make_isvc(), gateway_config)

        spec = route["spec"]
        assert route["metadata"]["name"] == "sklearn-iris"
        assert spec["parentRefs"] == [
            {
                "group": "gateway.networking.k8s.io",
                "kind": "Gateway",
                "name": "kserve-ingress-gateway",
                "namespace": "kserve",
            }
        ]
        assert spec["hostnames"] == ["sklearn-iris-default.example.com"]
        (rule,) = spec["rules"]
        assert rule["matches"] == [{"path": {"type": "PathPrefix", "value": "/"}}]
        assert rule["backendRefs"][0]["name"] == "sklearn-iris-predictor"
        assert rule["backendRefs"][0]["port"] == 80
        assert rule["timeouts"] == {"request": "30s"}
        headers = rule["filters"][0]["requestHeaderModifier"]["set"]
        assert {"name": "KServe-Isvc-Name", "value": "sklearn-iris"} in headers

    def test_explainer_rule_comes_first(
        self, make_isvc: Callable[..., InferenceService], gateway_config: InferenceServiceConfig
    ) -> None:
        """Test that explain requests match before the catch-all prefix."""
        isvc = make_isvc(transformer=TRANSFORMER, explainer=EXPLAINER)

        rules = build_top_level_http_route(isvc, gateway_config)["spec"]["rules"]

        explain, default = rules
        assert explain["matches"][0]["path"] == {
            "type": "RegularExpression",
            "value": r"^/v1/models/[\w-]+:explain$",
        }
        assert explain["backendRefs"][0]["name"] == "sklearn-iris-explainer"
        assert explain["timeouts"] == {"request": "90s"}
        assert default["backendRefs"][0]["name"] == "sklearn-iris-transformer"

    def test_path_based_rules(self, make_isvc: Callable[..., InferenceService]) -> None:
        config = InferenceServiceConfig.from_config_map(
            {
                "ingress": (
                    '{"enableGatewayApi": true, '
                    '"pathTemplate": "/serving/{{ .Namespace }}/{{ .Name }}"}'
                )
            }
        )

        route = build_top_level_http_route(make_isvc(), config)

        assert "example.com" in route["spec"]["hostnames"]
        regex = route["spec"]["rules"][-1]["matches"][0]["path"]
        assert regex == {
            "type": "RegularExpression",
            "value": "^/serving/default/sklearn-iris(/.*)?$",
        }

    def test_component_route(
        self, make_isvc: Callable[..., InferenceService], gateway_config: InferenceServiceConfig
    ) -> None:
        route = build_component_http_route(
            make_isvc(), ComponentType.PREDICTOR, gateway_config
        )
        assert route["metadata"]["name"] == "sklearn-iris-predictor"
        assert route["spec"]["hostnames"] == ["sklearn-iris-predictor-default.example.com"]
        assert route["metadata"]["labels"]["component"] == "predictor"


class TestIngress:
    """Test Ingress bodies."""

    def test_top_level_ingress(
        self, make_isvc: Callable[..., InferenceService], serving_config: InferenceServiceConfig
    ) -> None:
        isvc = make_isvc(explainer=EXPLAINER)

        ingress = build_top_level_ingress(isvc, serving_config)

        assert ingress["spec"]["ingressClassName"] == "istio"
        assert ingress["metadata"]["annotations"] == {"haproxy.router.openshift.io/timeout": "30s"}
        (rule,) = ingress["spec"]["rules"]
        assert rule["host"] == "sklearn-iris-default.example.com"
        explain, default = rule["http"]["paths"]
        assert explain["backend"]["service"]["name"] == "sklearn-iris-explainer"
        assert explain["pathType"] == "ImplementationSpecific"
        assert default == {
            "path": "/",
            "pathType": "Prefix",
            "backend": {"service": {"name": "sklearn-iris-predictor", "port": {"number": 80}}},
        }

    def test_component_ingress(
        self, make_isvc: Callable[..., InferenceService], serving_config: InferenceServiceConfig
    ) -> None:
        ingress = build_component_ingress(make_isvc(), ComponentType.PREDICTOR, serving_config)
        assert ingress["spec"]["rules"][0]["host"] == "sklearn-iris-predictor-default.example.com"


class TestServices:
    """Test Service bodies."""

    def test_component_service(self, make_isvc: Callable[..., InferenceService]) -> None:
        service = build_service(make_isvc(), ComponentType.PREDICTOR, "sklearn-iris-predictor")
        assert service["spec"]["selector"] == {"app": "isvc.sklearn-iris-predictor"}
        assert service["spec"]["ports"] == [
            {"name": "http", "port": 80, "targetPort": 8080, "protocol": "TCP"}
        ]
        assert "annotations" not in service["metadata"]

    def test_auth_adds_https_port(self, make_isvc: Callable[..., InferenceService]) -> None:
        isvc = make_isvc(annotations={"security.opendatahub.io/enable-auth": "true"})

        service = build_service(isvc, ComponentType.PREDICTOR, "sklearn-iris-predictor")

        assert service["spec"]["ports"][1]["targetPort"] == 8443
        assert service["metadata"]["annotations"] == {
            "service.beta.openshift.io/serving-cert-secret-name": "sklearn-iris-predictor-serving-cert"
        }

    def test_headless_service(self, make_isvc: Callable[..., InferenceService]) -> None:
        service = build_headless_service(
            make_isvc(name="llm"), "llm-head", "llm-predictor", "head"
        )
        assert service["spec"]["clusterIP"] == "None"
        assert service["spec"]["selector"] == {"app": "isvc.llm-predictor"}
        assert service["spec"]["ports"][0]["port"] == 6379
        assert service["metadata"]["labels"]["multinode/role"] == "head"
