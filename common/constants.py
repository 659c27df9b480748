from aws_cdk import aws_ec2 as ec2, aws_ecr_assets as ecr_assets, aws_lambda as _lambda, aws_rds as rds

DEFAULT_ARCHITECTURE = _lambda.Architecture.X86_64
# Must match DEFAULT_ARCHITECTURE.
IMAGE_PLATFORM = ecr_assets.Platform.LINUX_AMD64

DEFAULT_STAGE = "prod"
DEFAULT_REGION = "us-east-1"
IMAGE_DIRECTORY = "backend"
CREDENTIALS_FILE = ".env.aws"

# Naming convention components
SERVICE_NAME = "moodtracker"  # The application name
DOMAIN = "backend"  # The domain being deployed

# Database defaults
DB_INSTANCE_ID = "moodtracker-rds"
DB_NAME = "moodtracker"
DB_USER = "postgres"
DB_INSTANCE_CLASS = "db.t3.micro"
DB_ALLOCATED_STORAGE = 20
DB_ENGINE_VERSION = "14.12"
DB_PORT = 5432
DB_STORAGE_TYPE = rds.StorageType.GP2
DB_BACKUP_WINDOW = "03:00-04:00"
DB_MAINTENANCE_WINDOW = "sun:04:00-sun:05:00"

# Lambda Web Adapter
WEB_ADAPTER_WRAPPER = "/opt/bootstrap"
WEB_ADAPTER_PORT = "3000"
FUNCTION_TIMEOUT_SECONDS = 60
FUNCTION_MEMORY_MB = 1024
LOG_RETENTION_DAYS = 7

# API Gateway
API_BASE_PATH = "api/v1"
API_EXAMPLE_PATHS = {
    "HealthCheckUrl": "health",
    "UsersApiUrl": "users",
    "MoodsApiUrl": "moods",
}
CORS_ALLOW_HEADERS = "'Content-Type,X-Amz-Date,Authorization,X-Api-Key,X-Amz-Security-Token'"
CORS_ALLOW_METHODS = "'GET,POST,PUT,DELETE,OPTIONS'"
CORS_ALLOW_ORIGIN = "'*'"
LAMBDA_INVOKE_PATH = "arn:aws:apigateway:{region}:lambda:path/2015-03-31/functions/{function_arn}/invocations"

VPC_NAME = "moodtracker-vpc"
VPC_CIDR = "10.0.0.0/16"
CIDR_MASK = 24
ANY_IPV4_CIDR = "0.0.0.0/0"
DATABASE_SUBNET_TYPE = ec2.SubnetType.PRIVATE_ISOLATED

# Artifact patcher
FRONTEND_DIST_DIR = "backend/dist"
FRONTEND_ASSETS_DIR = "backend/dist/assets"
DEFAULT_PATCH_EXTENSIONS = (".html", ".js")
