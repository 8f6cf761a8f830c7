"""Shared defaults for shipwright."""

ACCOUNT_ID_PATTERN = r"\d{12}"

DEFAULT_ACCOUNT_ID = "205930632952"
DEFAULT_CLUSTER_NAME = "shipwright-cluster"
DEFAULT_REGION = "us-east-1"
DEFAULT_REPOSITORY = "app"
DEFAULT_SERVICE_TYPE = "LoadBalancer"
DEFAULT_PARAMETER_PREFIX = "/shipwright"

# Cluster-attached workloads must go before the cluster that owns them.
DEFAULT_DESTROY_TARGETS = (
    "kubernetes_deployment.app",
    "kubernetes_service_account.app",
)

DEFAULT_HEALTH_ATTEMPTS = 20
DEFAULT_HEALTH_INTERVAL_SECONDS = 15.0
DEFAULT_ENDPOINT_ATTEMPTS = 10
DEFAULT_ENDPOINT_OUTPUT = "service_endpoint"
DEFAULT_APPROVAL_TIMEOUT_SECONDS = 3600.0

SMOKE_TEST_PATHS = ("/", "/index.html")
SMOKE_TEST_SETTLE_SECONDS = 5.0
SMOKE_TEST_CONTAINER_PORT = 80
HTTP_PROBE_TIMEOUT_SECONDS = 10.0

TFVARS_FILE_NAME = "shipwright.auto.tfvars.json"
PLAN_FILE_NAME = "shipwright.tfplan"

DEFAULT_CONFIG_FILE = ".shipwright.yml"
DEFAULT_REPORT_FILE = ".shipwright/run-report.json"
