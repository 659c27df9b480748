from typing import Optional

from aws_cdk import RemovalPolicy, aws_ec2 as ec2, aws_rds as rds
from constructs import Construct

from common import constants
from common.stack_context import StackContext


class DatabaseNetwork(Construct):
    """VPC, security groups and subnet group shared by the database and the function."""

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        context: StackContext,
        port: int,
        vpc: Optional[ec2.IVpc] = None,
        use_default_vpc: bool = False,
    ) -> None:
        super().__init__(scope, construct_id)
        self.context = context

        if vpc is None and use_default_vpc:
            vpc = ec2.Vpc.from_lookup(self, "DefaultVpc", is_default=True)
            # The default VPC only has public subnets.
            self.subnet_type = ec2.SubnetType.PUBLIC
        else:
            self.subnet_type = constants.DATABASE_SUBNET_TYPE
        self.vpc = vpc or self.create_vpc()
        self.subnet_selection = ec2.SubnetSelection(subnet_type=self.subnet_type)

        self.database_sg = self.create_security_group(
            "DatabaseSG", "database", "Security group for MoodTracker RDS"
        )
        self.function_sg = self.create_security_group(
            "FunctionSG", "function", "Security group for MoodTracker Lambda functions"
        )
        self.database_ingress = self.allow_function_to_database(port)
        self.subnet_group = self.create_subnet_group()

    @property
    def subnet_ids(self) -> list:
        return self.vpc.select_subnets(subnet_type=self.subnet_type).subnet_ids

    def create_vpc(self) -> ec2.Vpc:
        return ec2.Vpc(
            self,
            "MoodTrackerVPC",
            nat_gateways=0,
            max_azs=2,
            vpc_name=constants.VPC_NAME,
            ip_addresses=ec2.IpAddresses.cidr(constants.VPC_CIDR),
            subnet_configuration=[
                ec2.SubnetConfiguration(
                    name="Public-Subnet",
                    subnet_type=ec2.SubnetType.PUBLIC,
                    cidr_mask=constants.CIDR_MASK,
                ),
                ec2.SubnetConfiguration(
                    name="Isolated-Subnet",
                    subnet_type=constants.DATABASE_SUBNET_TYPE,
                    cidr_mask=constants.CIDR_MASK,
                ),
            ],
        )

    def create_security_group(self, construct_id: str, action: str, description: str) -> ec2.SecurityGroup:
        return ec2.SecurityGroup(
            self,
            id=construct_id,
            vpc=self.vpc,
            security_group_name=self.context.build_resource_name("sg", action=action),
            description=description,
            allow_all_outbound=True,
        )

    def allow_function_to_database(self, port: int) -> ec2.CfnSecurityGroupIngress:
        """Open the database port to the function security group.

        Both groups are referenced by id so either side can be replaced
        without editing the other.
        """
        return ec2.CfnSecurityGroupIngress(
            self,
            "DatabaseIngressFromFunction",
            ip_protocol="tcp",
            from_port=port,
            to_port=port,
            group_id=self.database_sg.security_group_id,
            source_security_group_id=self.function_sg.security_group_id,
            description="Allow Lambda functions to access RDS",
        )

    def create_subnet_group(self) -> rds.SubnetGroup:
        return rds.SubnetGroup(
            self,
            "DatabaseSubnetGroup",
            description="Subnet group for MoodTracker RDS",
            vpc=self.vpc,
            vpc_subnets=self.subnet_selection,
            subnet_group_name=self.context.build_resource_name("subnet-group"),
            removal_policy=RemovalPolicy.DESTROY,
        )
