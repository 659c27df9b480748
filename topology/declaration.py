import common.constants as constants
from common.config import DeploymentConfig
from topology.model import ResourceKind, Topology, TopologyBuilder

# Resource names shared by the declaration and the stack that realizes it.
VPC = "vpc"
DATABASE_SECURITY_GROUP = "database-security-group"
FUNCTION_SECURITY_GROUP = "function-security-group"
DATABASE_INGRESS_RULE = "database-ingress-rule"
DATABASE_SUBNET_GROUP = "database-subnet-group"
DATABASE = "database"
CONTAINER_REGISTRY = "container-registry"
CONTAINER_IMAGE = "container-image"
FUNCTION_LOG_GROUP = "function-log-group"
FUNCTION = "function"
REST_API = "rest-api"
PROXY_RESOURCE = "proxy-resource"
PROXY_ROUTE = "proxy-route"
ROOT_ROUTE = "root-route"
CORS_ROUTE = "cors-route"
INVOKE_PERMISSION = "invoke-permission"
API_DEPLOYMENT = "api-deployment"
API_STAGE = "api-stage"


def declare_topology(config: DeploymentConfig) -> Topology:
    """Declare the MoodTracker backend resources and their dependencies."""
    db = config.database
    builder = TopologyBuilder()

    # Networking
    builder.add(
        VPC, ResourceKind.NETWORK,
        outputs=("vpc_id", "subnet_ids"),
        default=config.use_default_vpc,
    )
    builder.add(
        DATABASE_SECURITY_GROUP, ResourceKind.SECURITY_GROUP,
        outputs=("security_group_id",),
        description="Security group for MoodTracker RDS",
    )
    builder.add(
        FUNCTION_SECURITY_GROUP, ResourceKind.SECURITY_GROUP,
        outputs=("security_group_id",),
        description="Security group for MoodTracker Lambda functions",
    )
    # Both sides are referenced by resource name, never by an inline id.
    builder.add(
        DATABASE_INGRESS_RULE, ResourceKind.SECURITY_GROUP_RULE,
        security_group=DATABASE_SECURITY_GROUP,
        source_security_group=FUNCTION_SECURITY_GROUP,
        protocol="tcp",
        port=db.port,
        description="Allow Lambda functions to access RDS",
    )
    builder.add(
        DATABASE_SUBNET_GROUP, ResourceKind.SUBNET_GROUP,
        outputs=("subnet_group_name",),
        description="Subnet group for MoodTracker RDS",
    )
    builder.depends_on(DATABASE_SECURITY_GROUP, VPC)
    builder.depends_on(FUNCTION_SECURITY_GROUP, VPC)
    builder.depends_on(DATABASE_INGRESS_RULE, DATABASE_SECURITY_GROUP, FUNCTION_SECURITY_GROUP)
    builder.depends_on(DATABASE_SUBNET_GROUP, VPC)

    # Database
    builder.add(
        DATABASE, ResourceKind.DATABASE_INSTANCE,
        outputs=("endpoint_address", "port", "username", "db_name", "credentials_reference"),
        identifier=db.instance_id,
        engine="postgres",
        engine_version=db.engine_version,
        instance_class=db.instance_class,
        allocated_storage=db.allocated_storage,
        db_name=db.db_name,
        username=db.db_user,
        port=db.port,
    )
    builder.depends_on(DATABASE, DATABASE_SUBNET_GROUP, DATABASE_SECURITY_GROUP)

    # Container image, built and pushed by the engine before the function is created
    builder.add(
        CONTAINER_REGISTRY, ResourceKind.CONTAINER_REGISTRY,
        outputs=("repository_uri",),
        managed_by="engine",
    )
    builder.add(
        CONTAINER_IMAGE, ResourceKind.CONTAINER_IMAGE,
        outputs=("image_uri",),
        registry=CONTAINER_REGISTRY,
        build_context=config.image_directory,
        platform="linux/amd64",
    )
    builder.depends_on(CONTAINER_IMAGE, CONTAINER_REGISTRY)

    # Compute
    builder.add(
        FUNCTION_LOG_GROUP, ResourceKind.LOG_GROUP,
        retention_days=config.log_retention_days,
    )
    builder.add(
        FUNCTION, ResourceKind.FUNCTION,
        outputs=("function_name", "function_arn", "role_arn"),
        package_type="Image",
        image=CONTAINER_IMAGE,
        role_arn=config.role_arn,
        timeout=config.function_timeout,
        memory_size=config.function_memory,
    )
    # The function may only receive traffic once its network and data store exist.
    builder.depends_on(
        FUNCTION,
        CONTAINER_IMAGE,
        DATABASE,
        DATABASE_SUBNET_GROUP,
        DATABASE_SECURITY_GROUP,
        FUNCTION_SECURITY_GROUP,
        FUNCTION_LOG_GROUP,
    )

    # API Gateway
    builder.add(
        REST_API, ResourceKind.REST_API,
        outputs=("rest_api_id", "region"),
        description="Backend API using Lambda Web Adapter",
    )
    builder.add(PROXY_RESOURCE, ResourceKind.API_RESOURCE, path_part="{proxy+}")
    builder.add(
        PROXY_ROUTE, ResourceKind.API_ROUTE,
        resource=PROXY_RESOURCE, http_method="ANY", integration="AWS_PROXY", target=FUNCTION,
    )
    builder.add(
        ROOT_ROUTE, ResourceKind.API_ROUTE,
        resource=REST_API, http_method="ANY", integration="AWS_PROXY", target=FUNCTION,
    )
    builder.add(
        CORS_ROUTE, ResourceKind.API_ROUTE,
        resource=PROXY_RESOURCE, http_method="OPTIONS", integration="MOCK",
    )
    builder.add(
        INVOKE_PERMISSION, ResourceKind.PERMISSION,
        action="lambda:InvokeFunction",
        principal="apigateway.amazonaws.com",
        function=FUNCTION,
        source=REST_API,
    )
    builder.add(API_DEPLOYMENT, ResourceKind.API_DEPLOYMENT)
    builder.add(
        API_STAGE, ResourceKind.API_STAGE,
        outputs=("url",),
        stage_name=config.stage,
    )
    builder.depends_on(PROXY_RESOURCE, REST_API)
    builder.depends_on(PROXY_ROUTE, PROXY_RESOURCE, FUNCTION)
    builder.depends_on(ROOT_ROUTE, REST_API, FUNCTION)
    builder.depends_on(CORS_ROUTE, PROXY_RESOURCE)
    builder.depends_on(INVOKE_PERMISSION, FUNCTION, REST_API)
    builder.depends_on(API_DEPLOYMENT, PROXY_ROUTE, ROOT_ROUTE, CORS_ROUTE)
    builder.depends_on(API_STAGE, API_DEPLOYMENT)

    # Outputs
    builder.output("ApiUrl", API_STAGE, "url", "Base URL of the deployed stage")
    for key, path in constants.API_EXAMPLE_PATHS.items():
        builder.output(
            key, API_STAGE, "url",
            f"Example {path} endpoint",
            suffix=f"/{constants.API_BASE_PATH}/{path}",
        )
    builder.output("Region", REST_API, "region")
    builder.output("FunctionName", FUNCTION, "function_name")
    builder.output("FunctionArn", FUNCTION, "function_arn")
    builder.output("IamRoleArn", FUNCTION, "role_arn")
    builder.output("EcrRepositoryUrl", CONTAINER_REGISTRY, "repository_uri")
    builder.output("ContainerImageUri", CONTAINER_IMAGE, "image_uri")
    builder.output("RdsEndpoint", DATABASE, "endpoint_address")
    builder.output("RdsPort", DATABASE, "port")
    builder.output("RdsUsername", DATABASE, "username")
    builder.output("RdsDbName", DATABASE, "db_name")
    builder.output("DbCredentialsReference", DATABASE, "credentials_reference")
    builder.output("RdsSecurityGroupId", DATABASE_SECURITY_GROUP, "security_group_id")
    builder.output("FunctionSecurityGroupId", FUNCTION_SECURITY_GROUP, "security_group_id")
    builder.output("VpcId", VPC, "vpc_id")
    builder.output("SubnetIds", VPC, "subnet_ids")

    return builder.build()
