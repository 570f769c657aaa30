"""Constants for the HyperShift Lite Operator."""

# API Group
API_GROUP = "hypershiftlite.openshift.io"
API_VERSION = "v1alpha1"
API_GROUP_VERSION = f"{API_GROUP}/{API_VERSION}"

# Resource Kinds
KIND_KUBERNETES_SERVICE = "KubernetesService"
PLURAL_KUBERNETES_SERVICE = "kubernetesservice"

# Etcd operator API
ETCD_API_GROUP = "etcd.database.coreos.com"
ETCD_API_VERSION = "v1beta2"
KIND_ETCD_CLUSTER = "EtcdCluster"
PLURAL_ETCD_CLUSTER = "etcdclusters"

# Core kinds managed through the resource store
KIND_SECRET = "Secret"
KIND_CONFIG_MAP = "ConfigMap"
KIND_SERVICE = "Service"
KIND_SERVICE_ACCOUNT = "ServiceAccount"
KIND_ROLE = "Role"
KIND_ROLE_BINDING = "RoleBinding"
KIND_DEPLOYMENT = "Deployment"
KIND_POD = "Pod"

# Labels
LABEL_MANAGED_BY = f"{API_GROUP}/managed-by"
LABEL_ETCD_CLUSTER = "etcd_cluster"

# Annotations
ANNOTATION_CA_CHECKSUM = f"{API_GROUP}/ca-checksum"

# Field Manager
FIELD_MANAGER = "hypershift-lite-operator"
CONTROLLER_NAME = "hypershift-lite-operator"

# Condition Types
COND_AVAILABLE = "Available"
COND_ETCD_AVAILABLE = "EtcdAvailable"
COND_KAS_AVAILABLE = "KubeAPIServerAvailable"
COND_KCM_AVAILABLE = "KubeControllerManagerAvailable"

SUBSYSTEM_CONDITIONS = (COND_ETCD_AVAILABLE, COND_KAS_AVAILABLE, COND_KCM_AVAILABLE)

# Condition Statuses
STATUS_TRUE = "True"
STATUS_FALSE = "False"

# Condition Reasons
REASON_RUNNING = "Running"
REASON_NOT_AVAILABLE = "NotAvailable"
REASON_ETCD_RUNNING = "EtcdRunning"
REASON_ETCD_FAILED = "EtcdFailed"
REASON_SCALING_UP = "ScalingUp"
REASON_ETCD_CLUSTER_NOT_FOUND = "EtcdClusterNotFound"
REASON_KAS_RUNNING = "KASRunning"
REASON_KAS_SCALING_UP = "KASScalingUp"
REASON_KCM_RUNNING = "KCMRunning"
REASON_KCM_SCALING_UP = "KCMScalingUp"
REASON_DEPLOYMENT_NOT_FOUND = "DeploymentNotFound"

# Event Reasons
EVENT_REASON_RECONCILE_STARTED = "ReconcileStarted"
EVENT_REASON_RECONCILE_FAILED = "ReconcileFailed"
EVENT_REASON_ETCD_RECREATED = "EtcdClusterRecreated"
EVENT_REASON_CERTIFICATE_ISSUED = "CertificateIssued"
EVENT_REASON_CONTROL_PLANE_AVAILABLE = "ControlPlaneAvailable"

# Requeue delays (seconds)
REQUEUE_WORKLOAD_DELETING = 5.0
REQUEUE_ETCD_NOT_AVAILABLE = 10.0

# Error backoff (seconds)
ERROR_BACKOFF_MIN = 1.0
ERROR_BACKOFF_MAX = 10.0

# Etcd bootstrap
ETCD_BOOTSTRAP_TIMEOUT_SECONDS = 5 * 60

# Control plane topology
DEFAULT_SERVICE_CIDR = "172.30.0.0/16"
DEFAULT_POD_CIDR = "10.128.0.0/14"
ETCD_OPERATOR_IMAGE = "quay.io/coreos/etcd-operator:v0.9.4"
ETCD_VERSION = "3.4.9"
ETCD_CLIENT_PORT = 2379
KUBE_APISERVER_PORT = 6443

KUBE_APISERVER_REPLICAS = 1
KUBE_CONTROLLER_MANAGER_REPLICAS = 1
ETCD_CLUSTER_REPLICAS = 1

# Object names
ETCD_CLUSTER_NAME = "etcd"

# Release image components
COMPONENT_CLUSTER_CONFIG_OPERATOR = "cluster-config-operator"
COMPONENT_CLI = "cli"
COMPONENT_HYPERKUBE = "hyperkube"
