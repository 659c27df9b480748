import json
from typing import Any, Mapping

import pytest
from aws_cdk import App, Environment, aws_ec2 as ec2
from aws_cdk.assertions import Match, Template
from stack_test_helpers import (
    TEST_ROLE_ARN,
    MethodTestCase,
    UpdateDeletePolicyTestCase,
    build_config,
    build_stack,
    find_resources_by_type,
    get_single_resource_id,
    json_template,
    logical_id_of,
    password_template,
    template,
)
from governance_checks import assert_rds_compliance, assert_security_group_rules_reference_ids

from common.errors import ConfigurationError
from moodtracker.moodtracker_stack import MoodTrackerStack
from topology.declaration import CONTAINER_IMAGE, CONTAINER_REGISTRY, VPC
from topology.model import ResourceKind, TopologyBuilder

# ----------------------------- Resource count smoke test ------------------------

RESOURCES = [
    ("AWS::ApiGateway::RestApi", 1),
    ("AWS::ApiGateway::Resource", 1),
    ("AWS::ApiGateway::Method", 3),
    ("AWS::ApiGateway::Deployment", 1),
    ("AWS::ApiGateway::Stage", 1),
    ("AWS::EC2::SecurityGroup", 2),
    ("AWS::EC2::SecurityGroupIngress", 1),
    ("AWS::Lambda::Permission", 1),
    ("AWS::Logs::LogGroup", 1),
    ("AWS::RDS::DBInstance", 1),
    ("AWS::RDS::DBSubnetGroup", 1),
    ("AWS::SecretsManager::Secret", 1),
]


@pytest.mark.parametrize("resource_type,expected", RESOURCES)
def test_resource_count(template: Template, resource_type: str, expected: int):
    template.resource_count_is(resource_type, expected)


# ------------------- Database tests -------------------


def test_database_has_expected_properties(template: Template):
    template.has_resource_properties(
        "AWS::RDS::DBInstance",
        {
            "DBInstanceIdentifier": "moodtracker-rds",
            "Engine": "postgres",
            "EngineVersion": "14.12",
            "DBInstanceClass": "db.t3.micro",
            "AllocatedStorage": "20",
            "StorageType": "gp2",
            "DBName": "moodtracker",
            "BackupRetentionPeriod": 0,
            "PreferredBackupWindow": "03:00-04:00",
            "PreferredMaintenanceWindow": "sun:04:00-sun:05:00",
            "AutoMinorVersionUpgrade": False,
            "DeletionProtection": False,
            "PubliclyAccessible": False,
            "DBSubnetGroupName": {
                "Ref": Match.string_like_regexp(r".*NetworkDatabaseSubnetGroup.*")
            },
            "VPCSecurityGroups": [
                {
                    "Fn::GetAtt": [
                        Match.string_like_regexp(r".*NetworkDatabaseSG.*"),
                        "GroupId",
                    ]
                }
            ],
        },
    )
    assert_rds_compliance(template)


def test_database_credentials_use_generated_secret(template: Template):
    template.has_resource_properties(
        "AWS::SecretsManager::Secret",
        {"Name": "moodtracker-backend-db-credentials-prod"},
    )


def test_database_subnet_group_properties(template: Template):
    template.has_resource_properties(
        "AWS::RDS::DBSubnetGroup",
        {
            "DBSubnetGroupName": "moodtracker-backend-subnet-group-prod",
            "DBSubnetGroupDescription": "Subnet group for MoodTracker RDS",
        },
    )


# ------------------- Security group tests -------------------


def test_database_ingress_only_from_function_security_group(template: Template):
    template.has_resource_properties(
        "AWS::EC2::SecurityGroupIngress",
        {
            "IpProtocol": "tcp",
            "FromPort": 5432,
            "ToPort": 5432,
            "GroupId": {
                "Fn::GetAtt": [Match.string_like_regexp(r".*NetworkDatabaseSG.*"), "GroupId"]
            },
            "SourceSecurityGroupId": {
                "Fn::GetAtt": [Match.string_like_regexp(r".*NetworkFunctionSG.*"), "GroupId"]
            },
        },
    )
    assert_security_group_rules_reference_ids(template)


@pytest.mark.parametrize(
    "name",
    ["moodtracker-backend-database-sg-prod", "moodtracker-backend-function-sg-prod"],
)
def test_security_group_names(template: Template, name: str):
    template.has_resource_properties("AWS::EC2::SecurityGroup", {"GroupName": name})


# ------------------- Update/Delete Policy tests -------------------
UPDATE_DELETE_POLICY_CASE = [
    UpdateDeletePolicyTestCase(
        id="AWS::RDS::DBInstance", update_policy="Delete", delete_policy="Delete"
    ),
    UpdateDeletePolicyTestCase(
        id="AWS::Logs::LogGroup", update_policy="Delete", delete_policy="Delete"
    ),
]


@pytest.mark.parametrize("case", UPDATE_DELETE_POLICY_CASE, ids=lambda test: test.id)
def test_resource_level_removal_policies(
    template: Template,
    json_template: Mapping[str, Any],
    case: UpdateDeletePolicyTestCase,
):
    resource_type = find_resources_by_type(template, case.id)
    logical_id = get_single_resource_id(resource_type, case.id)

    assert json_template["Resources"][logical_id]["DeletionPolicy"] == case.delete_policy
    assert (
        json_template["Resources"][logical_id]["UpdateReplacePolicy"]
        == case.update_policy
    )


# -------------------- Lambda Function tests ----------------------------


def test_function_configuration(template: Template):
    template.has_resource_properties(
        "AWS::Lambda::Function",
        {
            "FunctionName": "moodtracker-backend-function-prod",
            "PackageType": "Image",
            "Role": TEST_ROLE_ARN,
            "MemorySize": 1024,
            "Timeout": 60,
            "Architectures": ["x86_64"],
            "Environment": {
                "Variables": Match.object_like(
                    {
                        "AWS_LAMBDA_EXEC_WRAPPER": "/opt/bootstrap",
                        "LAMBDA_SERVER_PORT": "3000",
                        "PORT": "3000",
                        "APP_PORT": "3000",
                        "DB_USER": "postgres",
                        "DB_NAME": "moodtracker",
                        "DB_HOST": {
                            "Fn::GetAtt": [
                                Match.string_like_regexp(r".*MoodtrackerBackendDatabase.*"),
                                "Endpoint.Address",
                            ]
                        },
                        "DB_PASSWORD": Match.any_value(),
                        "DB_SECRET_ARN": Match.any_value(),
                    }
                )
            },
            "VpcConfig": {
                "SecurityGroupIds": [
                    {
                        "Fn::GetAtt": [
                            Match.string_like_regexp(r".*NetworkFunctionSG.*"),
                            "GroupId",
                        ]
                    }
                ],
                "SubnetIds": Match.any_value(),
            },
        },
    )


def test_function_password_resolves_from_generated_secret(template: Template):
    function = find_resources_by_type(
        template, "AWS::Lambda::Function", props={"Properties": {"PackageType": "Image"}}
    )
    variables = next(iter(function.values()))["Properties"]["Environment"]["Variables"]
    # The backend refuses to start without DB_PASSWORD.
    password = json.dumps(variables["DB_PASSWORD"])
    assert "{{resolve:secretsmanager:" in password
    assert ":SecretString:password::}}" in password


def test_function_log_group_properties(template: Template):
    template.has_resource_properties(
        "AWS::Logs::LogGroup",
        {
            "LogGroupName": "/aws/lambda/moodtracker-backend-function-prod",
            "RetentionInDays": 7,
        },
    )


def test_function_depends_on_network_and_database(
    template: Template, json_template: Mapping[str, Any]
):
    function_id = logical_id_of(
        template, "AWS::Lambda::Function", {"Properties": {"PackageType": "Image"}}
    )
    depends_on = set(json_template["Resources"][function_id]["DependsOn"])
    expected = {
        logical_id_of(template, "AWS::RDS::DBInstance"),
        logical_id_of(template, "AWS::RDS::DBSubnetGroup"),
        logical_id_of(template, "AWS::Logs::LogGroup"),
        *find_resources_by_type(template, "AWS::EC2::SecurityGroup").keys(),
    }
    assert expected <= depends_on


def test_database_depends_on_subnet_group_and_security_group(
    template: Template, json_template: Mapping[str, Any]
):
    database_id = logical_id_of(template, "AWS::RDS::DBInstance")
    depends_on = set(json_template["Resources"][database_id]["DependsOn"])
    assert logical_id_of(template, "AWS::RDS::DBSubnetGroup") in depends_on
    assert (
        logical_id_of(
            template,
            "AWS::EC2::SecurityGroup",
            {"Properties": {"GroupName": "moodtracker-backend-database-sg-prod"}},
        )
        in depends_on
    )


# -------------------- ECR tests ----------------------------


def test_image_is_built_by_the_toolkit(template: Template):
    # No repository of its own: an empty one would fail the function on first deploy.
    template.resource_count_is("AWS::ECR::Repository", 0)
    function = find_resources_by_type(
        template, "AWS::Lambda::Function", props={"Properties": {"PackageType": "Image"}}
    )
    image_uri = json.dumps(next(iter(function.values()))["Properties"]["Code"]["ImageUri"])
    assert "container-assets" in image_uri


def test_image_and_registry_are_realized_from_the_asset():
    stack = build_stack(stack_id="ImageStack")
    assert stack.realized[CONTAINER_IMAGE].attributes["image_uri"] == stack.image.image_uri
    assert stack.realized[CONTAINER_REGISTRY].node.node.path == stack.image.repository.node.path


def test_missing_dockerfile_is_a_configuration_error(tmp_path):
    with pytest.raises(ConfigurationError, match="no Dockerfile"):
        build_stack(build_config(image_directory=str(tmp_path)), stack_id="NoImageStack")


# -------------------- API Gateway tests ----------------------------


METHOD_TEST_CASES = (
    MethodTestCase(id="proxy_any", http_method="ANY", integration_type="AWS_PROXY"),
    MethodTestCase(id="cors_options", http_method="OPTIONS", integration_type="MOCK"),
)


@pytest.mark.parametrize("case", METHOD_TEST_CASES, ids=lambda test: test.id)
def test_api_method_integrations(template: Template, case: MethodTestCase):
    template.has_resource_properties(
        "AWS::ApiGateway::Method",
        {
            "HttpMethod": case.http_method,
            "AuthorizationType": "NONE",
            "Integration": Match.object_like({"Type": case.integration_type}),
        },
    )


def test_api_proxy_methods_invoke_function(template: Template):
    methods = find_resources_by_type(
        template, "AWS::ApiGateway::Method", props={"Properties": {"HttpMethod": "ANY"}}
    )
    assert len(methods) == 2
    for method in methods.values():
        integration = method["Properties"]["Integration"]
        assert integration["IntegrationHttpMethod"] == "POST"
        assert "MoodtrackerBackendFunction" in str(integration["Uri"])


def test_api_cors_method_responses(template: Template):
    template.has_resource_properties(
        "AWS::ApiGateway::Method",
        {
            "HttpMethod": "OPTIONS",
            "Integration": Match.object_like(
                {
                    "RequestTemplates": {"application/json": '{"statusCode": 200}'},
                    "IntegrationResponses": [
                        {
                            "StatusCode": "200",
                            "ResponseParameters": {
                                "method.response.header.Access-Control-Allow-Headers": "'Content-Type,X-Amz-Date,Authorization,X-Api-Key,X-Amz-Security-Token'",
                                "method.response.header.Access-Control-Allow-Methods": "'GET,POST,PUT,DELETE,OPTIONS'",
                                "method.response.header.Access-Control-Allow-Origin": "'*'",
                            },
                        }
                    ],
                }
            ),
            "MethodResponses": [
                {
                    "StatusCode": "200",
                    "ResponseParameters": {
                        "method.response.header.Access-Control-Allow-Headers": True,
                        "method.response.header.Access-Control-Allow-Methods": True,
                        "method.response.header.Access-Control-Allow-Origin": True,
                    },
                }
            ],
        },
    )


def test_api_proxy_resource(template: Template):
    template.has_resource_properties("AWS::ApiGateway::Resource", {"PathPart": "{proxy+}"})


def test_api_invoke_permission(template: Template):
    template.has_resource_properties(
        "AWS::Lambda::Permission",
        {
            "Action": "lambda:InvokeFunction",
            "Principal": "apigateway.amazonaws.com",
            "FunctionName": {
                "Ref": Match.string_like_regexp(r".*MoodtrackerBackendFunction.*")
            },
        },
    )


def test_api_deployment_waits_for_all_routes(
    template: Template, json_template: Mapping[str, Any]
):
    deployment_id = logical_id_of(template, "AWS::ApiGateway::Deployment")
    depends_on = set(json_template["Resources"][deployment_id]["DependsOn"])
    methods = set(find_resources_by_type(template, "AWS::ApiGateway::Method"))
    assert methods <= depends_on


def test_api_stage_properties(template: Template):
    template.has_resource_properties(
        "AWS::ApiGateway::Stage",
        {
            "StageName": "prod",
            "RestApiId": {"Ref": Match.string_like_regexp(r".*MoodtrackerBackendApi.*")},
        },
    )


# -------------------- Outputs ----------------------------

EXPECTED_OUTPUTS = [
    "ApiUrl",
    "HealthCheckUrl",
    "UsersApiUrl",
    "MoodsApiUrl",
    "FunctionName",
    "FunctionArn",
    "IamRoleArn",
    "EcrRepositoryUrl",
    "ContainerImageUri",
    "RdsEndpoint",
    "RdsPort",
    "RdsUsername",
    "RdsDbName",
    "DbCredentialsReference",
    "RdsSecurityGroupId",
    "FunctionSecurityGroupId",
    "VpcId",
    "SubnetIds",
    "Region",
]


@pytest.mark.parametrize("key", EXPECTED_OUTPUTS)
def test_stack_outputs(template: Template, key: str):
    assert key in template.find_outputs("*")


def test_health_check_url_carries_stage_and_api_path(json_template: Mapping[str, Any]):
    value = json_template["Outputs"]["HealthCheckUrl"]["Value"]
    assert "/prod/api/v1/health" in str(value)


def test_role_arn_output_is_literal(json_template: Mapping[str, Any]):
    assert json_template["Outputs"]["IamRoleArn"]["Value"] == TEST_ROLE_ARN


# -------------------- Configuration variants ----------------------------


def test_supplied_password_skips_generated_secret(password_template: Template):
    password_template.resource_count_is("AWS::SecretsManager::Secret", 0)
    password_template.has_resource_properties(
        "AWS::Lambda::Function",
        {
            "Environment": {
                "Variables": Match.object_like({"DB_PASSWORD": "s3cret-pass"})
            },
        },
    )


def test_stage_name_follows_config(password_template: Template):
    password_template.has_resource_properties(
        "AWS::ApiGateway::Stage", {"StageName": "staging"}
    )
    password_template.has_resource_properties(
        "AWS::Lambda::Function",
        {"FunctionName": "moodtracker-backend-function-staging"},
    )


def test_stack_rejects_topology_missing_built_resources():
    partial = TopologyBuilder().add(VPC, ResourceKind.NETWORK, outputs=("vpc_id", "subnet_ids")).build()
    with pytest.raises(ConfigurationError, match="does not declare"):
        MoodTrackerStack(App(), "PartialStack", config=build_config(), topology=partial)


def test_stack_exposes_validated_topology():
    stack = build_stack(stack_id="TopologyStack")
    assert len(stack.realized) == len(stack.topology)


def test_default_vpc_is_looked_up_and_uses_public_subnets():
    stack = build_stack(
        build_config(use_default_vpc=True),
        stack_id="DefaultVpcStack",
        env=Environment(account="123456789012", region="us-east-1"),
    )
    template = Template.from_stack(stack)

    template.resource_count_is("AWS::EC2::VPC", 0)
    assert stack.network.subnet_type == ec2.SubnetType.PUBLIC
    subnet_group = find_resources_by_type(template, "AWS::RDS::DBSubnetGroup")
    props = subnet_group[get_single_resource_id(subnet_group)]["Properties"]
    assert props["SubnetIds"] == stack.network.subnet_ids
    template.has_resource_properties("AWS::RDS::DBInstance", {"PubliclyAccessible": True})
    template.resource_count_is("AWS::EC2::SecurityGroupIngress", 1)
