"""
Short-lived cloud credentials and the environment handed to tool subprocesses.

Credentials come from an OIDC web-identity token exchanged with AWS STS, so no
long-lived secret is ever stored. The resulting keys live only in memory and
reach tools through their environment.
"""

import logging
import os
from pathlib import Path
from typing import Dict, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel, ConfigDict, SecretStr

from tfpipelines.error_handling import PlanError
from tfpipelines.schemas import PipelineInvocation, PipelineSecrets

logger = logging.getLogger(__name__)

TOKEN_FILE_ENV = "AWS_WEB_IDENTITY_TOKEN_FILE"
TOKEN_ENV = "TFP_OIDC_TOKEN"


class SessionCredentials(BaseModel):
    """Temporary credentials from a web-identity exchange."""
    model_config = ConfigDict(frozen=True)

    access_key_id: str
    secret_access_key: SecretStr
    session_token: SecretStr
    expiration: str = ""

    def to_env(self) -> Dict[str, str]:
        return {
            "AWS_ACCESS_KEY_ID": self.access_key_id,
            "AWS_SECRET_ACCESS_KEY": self.secret_access_key.get_secret_value(),
            "AWS_SESSION_TOKEN": self.session_token.get_secret_value(),
        }


class OIDCCredentialExchange:
    """
    Exchange a CI-issued OIDC token for temporary AWS credentials.

    Example:
        exchange = OIDCCredentialExchange(
            role_arn="arn:aws:iam::123456789012:role/terraform-deploy",
            region="eu-west-1",
        )
        credentials = exchange.exchange()
    """

    def __init__(
        self,
        role_arn: str,
        region: str,
        session_name: str = "tfpipelines",
        token_file: Optional[str] = None,
        duration_seconds: int = 3600,
    ):
        self.role_arn = role_arn
        self.region = region
        self.session_name = session_name
        self.token_file = token_file or os.environ.get(TOKEN_FILE_ENV)
        self.duration_seconds = duration_seconds

    def _read_token(self) -> str:
        if self.token_file:
            try:
                token = Path(self.token_file).read_text(encoding="utf-8").strip()
            except (OSError, UnicodeError) as e:
                raise PlanError(f"Could not read OIDC token file {self.token_file}", detail=str(e))
        else:
            token = os.environ.get(TOKEN_ENV, "").strip()
        if not token:
            raise PlanError(
                "No OIDC token available",
                detail=f"Set {TOKEN_FILE_ENV} to a token file or {TOKEN_ENV} to the token",
            )
        return token

    def exchange(self) -> SessionCredentials:
        """
        Call STS AssumeRoleWithWebIdentity.

        Raises:
            PlanError: If no token is available or STS refuses the exchange
        """
        token = self._read_token()
        sts = boto3.client("sts", region_name=self.region)
        try:
            response = sts.assume_role_with_web_identity(
                RoleArn=self.role_arn,
                RoleSessionName=self.session_name,
                WebIdentityToken=token,
                DurationSeconds=self.duration_seconds,
            )
        except (ClientError, BotoCoreError) as e:
            raise PlanError(f"AssumeRoleWithWebIdentity failed for {self.role_arn}", detail=str(e))

        creds = response["Credentials"]
        logger.info("Assumed %s until %s", self.role_arn, creds.get("Expiration"))
        return SessionCredentials(
            access_key_id=creds["AccessKeyId"],
            secret_access_key=creds["SecretAccessKey"],
            session_token=creds["SessionToken"],
            expiration=str(creds.get("Expiration", "")),
        )


def tool_environment(
    invocation: PipelineInvocation,
    secrets: Optional[PipelineSecrets] = None,
    credentials: Optional[SessionCredentials] = None,
) -> Dict[str, str]:
    """
    Environment variables for every tool subprocess of one invocation.

    Args:
        invocation: Pipeline invocation (region)
        secrets: Optional secret inputs
        credentials: Optional exchanged cloud credentials

    Returns:
        Dict layered over the parent environment by SecureSubprocess
    """
    env = {
        "AWS_REGION": invocation.region,
        "AWS_DEFAULT_REGION": invocation.region,
        "TF_IN_AUTOMATION": "1",
        "TF_INPUT": "0",
    }
    if secrets is not None:
        env.update(secrets.to_env())
    if credentials is not None:
        env.update(credentials.to_env())
    return env
