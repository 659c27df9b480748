import os
from typing import Any, Dict, Optional

from attrs import define, field
from aws_cdk import (
    CfnOutput,
    Duration,
    Fn,
    RemovalPolicy,
    SecretValue,
    Stack,
    aws_apigateway as apigw,
    aws_ec2 as ec2,
    aws_ecr_assets as ecr_assets,
    aws_iam as iam,
    aws_lambda as _lambda,
    aws_logs as logs,
    aws_rds as rds,
)
from constructs import Construct

import common.constants as constants
import topology.declaration as names
from common.config import DeploymentConfig
from common.errors import ConfigurationError
from common.stack_context import StackContext
from networking.database_network import DatabaseNetwork
from topology.declaration import declare_topology
from topology.model import Topology


@define(slots=True)
class RealizedResource:
    """A declared resource's construct and its provisioned attributes."""

    node: Construct
    attributes: Dict[str, Any] = field(factory=dict)


class MoodTrackerStack(Stack):

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        config: DeploymentConfig,
        topology: Optional[Topology] = None,
        vpc: Optional[ec2.IVpc] = None,
        **kwargs,
    ) -> None:
        super().__init__(scope, construct_id, **kwargs)
        self.config = config
        self.topology = topology or declare_topology(config)
        self.context = StackContext(scope=self, env=config.stage)
        self.realized: Dict[str, RealizedResource] = {}

        # VPC, security groups, ingress rule and subnet group
        self.network = DatabaseNetwork(
            self,
            "Network",
            context=self.context,
            port=config.database.port,
            vpc=vpc,
            use_default_vpc=config.use_default_vpc,
        )
        self._register_network()

        # PostgreSQL instance
        self.database = self._build_database()

        # Backend image, built and pushed by the CDK toolkit before the stack deploys
        self.image = self._build_image()
        self.image_code = _lambda.DockerImageCode.from_ecr(
            self.image.repository, tag_or_digest=self.image.image_tag
        )

        # Lambda function behind the Lambda Web Adapter
        self.log_group = self.context.build_log_group(
            "function", retention_days=config.log_retention_days
        )
        self._register(names.FUNCTION_LOG_GROUP, self.log_group)
        self.function = self._build_function(self.log_group)

        # API Gateway
        self.api = self._build_rest_api()
        self.stage = self._build_api_routes(self.api, self.function)

        self._check_all_realized()
        self._wire_dependencies()
        self._emit_outputs()

    # Topology bookkeeping

    def _register(self, name: str, node: Construct, **attributes: Any) -> None:
        if name not in self.topology:
            raise ConfigurationError(
                f"stack builds {name!r} but the topology does not declare it"
            )
        self.realized[name] = RealizedResource(node=node, attributes=attributes)

    def _register_network(self) -> None:
        network = self.network
        self._register(
            names.VPC,
            network.vpc,
            vpc_id=network.vpc.vpc_id,
            subnet_ids=Fn.join(",", network.subnet_ids),
        )
        self._register(
            names.DATABASE_SECURITY_GROUP,
            network.database_sg,
            security_group_id=network.database_sg.security_group_id,
        )
        self._register(
            names.FUNCTION_SECURITY_GROUP,
            network.function_sg,
            security_group_id=network.function_sg.security_group_id,
        )
        self._register(names.DATABASE_INGRESS_RULE, network.database_ingress)
        self._register(
            names.DATABASE_SUBNET_GROUP,
            network.subnet_group,
            subnet_group_name=network.subnet_group.subnet_group_name,
        )

    def _check_all_realized(self) -> None:
        missing = [resource.name for resource in self.topology if resource.name not in self.realized]
        if missing:
            raise ConfigurationError(f"no construct realizes declared resources: {missing}")

    def _wire_dependencies(self) -> None:
        """Apply every declared edge as an explicit CloudFormation dependency."""
        for edge in self.topology.edges:
            dependent = self.realized[edge.dependent].node
            dependent.node.add_dependency(self.realized[edge.dependency].node)

    def _emit_outputs(self) -> None:
        for output in self.topology.outputs:
            attributes = self.realized[output.resource].attributes
            if output.attribute not in attributes:
                raise ConfigurationError(
                    f"output {output.key!r}: {output.resource}.{output.attribute} was not provisioned"
                )
            value = attributes[output.attribute]
            CfnOutput(
                self,
                output.key,
                value=f"{value}{output.suffix}",
                description=output.description or None,
            )

    # Resource creation

    def _build_database(self) -> rds.DatabaseInstance:
        db = self.config.database
        if db.db_password:
            credentials = rds.Credentials.from_password(
                db.db_user, SecretValue.unsafe_plain_text(db.db_password)
            )
        else:
            credentials = rds.Credentials.from_generated_secret(
                db.db_user,
                secret_name=self.context.build_resource_name("db-credentials"),
            )

        database = rds.DatabaseInstance(
            self,
            self.context.build_resource_id("Database"),
            instance_identifier=db.instance_id,
            engine=rds.DatabaseInstanceEngine.postgres(
                version=rds.PostgresEngineVersion.of(
                    db.engine_version, db.engine_version.split(".")[0]
                )
            ),
            instance_type=ec2.InstanceType(db.instance_class[len("db."):]),
            allocated_storage=db.allocated_storage,
            storage_type=constants.DB_STORAGE_TYPE,
            storage_encrypted=True,
            database_name=db.db_name,
            credentials=credentials,
            port=db.port,
            vpc=self.network.vpc,
            subnet_group=self.network.subnet_group,
            security_groups=[self.network.database_sg],
            publicly_accessible=self.config.use_default_vpc,
            backup_retention=Duration.days(0),
            preferred_backup_window=constants.DB_BACKUP_WINDOW,
            preferred_maintenance_window=constants.DB_MAINTENANCE_WINDOW,
            auto_minor_version_upgrade=False,
            deletion_protection=False,
            removal_policy=RemovalPolicy.DESTROY,
        )
        self._register(
            names.DATABASE,
            database,
            endpoint_address=database.db_instance_endpoint_address,
            port=database.db_instance_endpoint_port,
            username=db.db_user,
            db_name=db.db_name,
            credentials_reference=(
                database.secret.secret_arn if database.secret else "supplied-password"
            ),
        )
        return database

    def _build_image(self) -> ecr_assets.DockerImageAsset:
        """Backend image built from ``config.image_directory`` by the CDK toolkit.

        The toolkit pushes it to the bootstrap asset repository during
        ``cdk deploy``, so the tag exists before the function is created.
        """
        directory = self.config.image_directory
        if not os.path.isfile(os.path.join(directory, "Dockerfile")):
            raise ConfigurationError(
                f"no Dockerfile in image directory {directory!r}: set image_directory "
                "or IMAGE_DIRECTORY to the backend build context"
            )
        image = ecr_assets.DockerImageAsset(
            self,
            self.context.build_resource_id("Image"),
            directory=directory,
            platform=constants.IMAGE_PLATFORM,
        )
        self._register(
            names.CONTAINER_REGISTRY,
            image.repository,
            repository_uri=image.repository.repository_uri,
        )
        self._register(names.CONTAINER_IMAGE, image, image_uri=image.image_uri)
        return image

    def _database_environment(self) -> Dict[str, str]:
        """Connection settings in the variables the backend requires at startup."""
        db = self.config.database
        if db.db_password:
            password = db.db_password
        else:
            password = self.database.secret.secret_value_from_json("password").unsafe_unwrap()
        environment = {
            "DB_HOST": self.database.db_instance_endpoint_address,
            "DB_PORT": self.database.db_instance_endpoint_port,
            "DB_USER": db.db_user,
            "DB_NAME": db.db_name,
            "DB_PASSWORD": password,
        }
        if self.database.secret:
            environment["DB_SECRET_ARN"] = self.database.secret.secret_arn
        return environment

    def _build_function(self, log_group: logs.ILogGroup) -> _lambda.DockerImageFunction:
        """Container image function, run through the Lambda Web Adapter."""
        role = iam.Role.from_role_arn(
            self,
            self.context.build_resource_id("ExecutionRole"),
            self.config.role_arn,
            mutable=False,
        )
        function = _lambda.DockerImageFunction(
            self,
            self.context.build_resource_id("Function"),
            function_name=self.context.build_resource_name("function"),
            description="MoodTracker backend served through the Lambda Web Adapter",
            code=self.image_code,
            role=role,
            architecture=constants.DEFAULT_ARCHITECTURE,
            timeout=Duration.seconds(self.config.function_timeout),
            memory_size=self.config.function_memory,
            log_group=log_group,
            vpc=self.network.vpc,
            vpc_subnets=self.network.subnet_selection,
            security_groups=[self.network.function_sg],
            allow_public_subnet=True,
            environment={
                "AWS_LAMBDA_EXEC_WRAPPER": constants.WEB_ADAPTER_WRAPPER,
                "LAMBDA_SERVER_PORT": constants.WEB_ADAPTER_PORT,
                "PORT": constants.WEB_ADAPTER_PORT,
                "APP_PORT": constants.WEB_ADAPTER_PORT,
                **self._database_environment(),
            },
        )
        self._register(
            names.FUNCTION,
            function,
            function_name=function.function_name,
            function_arn=function.function_arn,
            role_arn=self.config.role_arn,
        )
        return function

    def _build_rest_api(self) -> apigw.RestApi:
        api = apigw.RestApi(
            self,
            self.context.build_resource_id("Api"),
            rest_api_name=self.context.build_resource_name("api"),
            description="Backend API using Lambda Web Adapter",
            deploy=False,
            cloud_watch_role=False,
        )
        self._register(
            names.REST_API,
            api,
            rest_api_id=api.rest_api_id,
            region=self.region,
        )
        return api

    def _lambda_proxy_integration(self, function: _lambda.IFunction) -> apigw.Integration:
        return apigw.Integration(
            type=apigw.IntegrationType.AWS_PROXY,
            integration_http_method="POST",
            uri=constants.LAMBDA_INVOKE_PATH.format(
                region=self.region, function_arn=function.function_arn
            ),
        )

    def _cors_integration(self) -> apigw.MockIntegration:
        return apigw.MockIntegration(
            request_templates={"application/json": '{"statusCode": 200}'},
            integration_responses=[
                apigw.IntegrationResponse(
                    status_code="200",
                    response_parameters={
                        "method.response.header.Access-Control-Allow-Headers": constants.CORS_ALLOW_HEADERS,
                        "method.response.header.Access-Control-Allow-Methods": constants.CORS_ALLOW_METHODS,
                        "method.response.header.Access-Control-Allow-Origin": constants.CORS_ALLOW_ORIGIN,
                    },
                )
            ],
        )

    def _build_api_routes(self, api: apigw.RestApi, function: _lambda.IFunction) -> apigw.Stage:
        """Catch-all proxy and root routes, CORS preflight, permission, deployment and stage.

        Routes are scoped to the stack rather than to their API resource so the
        explicit dependencies between them never point back at a sibling.
        """
        proxy = apigw.Resource(
            self,
            self.context.build_resource_id("ProxyResource"),
            parent=api.root,
            path_part="{proxy+}",
        )
        self._register(names.PROXY_RESOURCE, proxy)

        proxy_method = apigw.Method(
            self,
            self.context.build_resource_id("Method", action="proxy"),
            http_method="ANY",
            resource=proxy,
            integration=self._lambda_proxy_integration(function),
        )
        self._register(names.PROXY_ROUTE, proxy_method)

        root_method = apigw.Method(
            self,
            self.context.build_resource_id("Method", action="root"),
            http_method="ANY",
            resource=api.root,
            integration=self._lambda_proxy_integration(function),
        )
        self._register(names.ROOT_ROUTE, root_method)

        cors_method = apigw.Method(
            self,
            self.context.build_resource_id("Method", action="cors"),
            http_method="OPTIONS",
            resource=proxy,
            integration=self._cors_integration(),
            options=apigw.MethodOptions(
                method_responses=[
                    apigw.MethodResponse(
                        status_code="200",
                        response_parameters={
                            "method.response.header.Access-Control-Allow-Headers": True,
                            "method.response.header.Access-Control-Allow-Methods": True,
                            "method.response.header.Access-Control-Allow-Origin": True,
                        },
                    )
                ]
            ),
        )
        self._register(names.CORS_ROUTE, cors_method)

        permission = _lambda.CfnPermission(
            self,
            self.context.build_resource_id("InvokePermission"),
            action="lambda:InvokeFunction",
            function_name=function.function_name,
            principal="apigateway.amazonaws.com",
            source_arn=api.arn_for_execute_api(),
        )
        self._register(names.INVOKE_PERMISSION, permission)

        deployment = apigw.Deployment(
            self,
            self.context.build_resource_id("Deployment"),
            api=api,
        )
        self._register(names.API_DEPLOYMENT, deployment)

        stage = apigw.Stage(
            self,
            self.context.build_resource_id("Stage"),
            deployment=deployment,
            stage_name=self.config.stage,
        )
        self._register(
            names.API_STAGE,
            stage,
            url=f"https://{api.rest_api_id}.execute-api.{self.region}.{self.url_suffix}/{self.config.stage}",
        )
        return stage
