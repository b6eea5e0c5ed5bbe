"""
Configuration module for Code Pilot.
Handles environment variables, model settings, sandbox selection and execution limits.
"""

import json
import os
from dataclasses import dataclass, field
from typing import Dict, Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _parse_cost_table(raw: Optional[str]) -> Dict[str, float]:
    """Parse LLM_COST_PER_1K_TOKENS. Accepts {"input": x, "output": y} or {model: {...}}."""
    default = {"input": 0.003, "output": 0.015}
    if not raw:
        return default
    try:
        data = json.loads(raw)
    except ValueError:
        return default
    if not isinstance(data, dict):
        return default
    if "input" in data or "output" in data:
        return {"input": float(data.get("input", 0)), "output": float(data.get("output", 0))}
    for value in data.values():
        if isinstance(value, dict):
            return {"input": float(value.get("input", 0)), "output": float(value.get("output", 0))}
    return default


@dataclass
class AWSConfig:
    """AWS-specific configuration"""
    region: str = os.getenv("AWS_REGION", "us-east-1")
    access_key_id: str = os.getenv("AWS_ACCESS_KEY_ID", "")
    secret_access_key: str = os.getenv("AWS_SECRET_ACCESS_KEY", "")
    session_token: str = os.getenv("AWS_SESSION_TOKEN", "")
    profile_name: str = os.getenv("AWS_PROFILE", "")

    def has_explicit_credentials(self) -> bool:
        return bool(self.access_key_id and self.secret_access_key)

    def has_session_token(self) -> bool:
        return bool(self.session_token)

    def has_profile(self) -> bool:
        return bool(self.profile_name)


@dataclass
class ModelConfig:
    """LLM model settings and cost accounting"""
    model_id: str = os.getenv("BEDROCK_MODEL_ID", "us.anthropic.claude-sonnet-4-5-20250929-v1:0")
    max_tokens: int = _env_int("LLM_MAX_TOKENS", 4096)
    temperature: float = float(os.getenv("LLM_TEMPERATURE", "0.1"))
    max_context_tokens: int = _env_int("MAX_CONTEXT_TOKENS", 8000)
    cost_per_1k_tokens: Dict[str, float] = field(
        default_factory=lambda: _parse_cost_table(os.getenv("LLM_COST_PER_1K_TOKENS"))
    )

    def cost_for(self, input_tokens: int, output_tokens: int) -> float:
        return (
            input_tokens / 1000.0 * self.cost_per_1k_tokens.get("input", 0.0)
            + output_tokens / 1000.0 * self.cost_per_1k_tokens.get("output", 0.0)
        )


@dataclass
class GitHubConfig:
    """GitHub API access"""
    token: str = os.getenv("GITHUB_PERSONAL_ACCESS_TOKEN", "")
    api_url: str = os.getenv("GITHUB_API_URL", "https://api.github.com")
    timeout: int = _env_int("GITHUB_TIMEOUT", 30)

    def has_token(self) -> bool:
        return bool(self.token)


@dataclass
class SandboxConfig:
    """Sandbox backend selection and session lifetime"""
    use_remote: bool = _env_bool("USE_REMOTE_SANDBOX")
    ssh_host: str = os.getenv("SANDBOX_SSH_HOST", "")
    ssh_user: str = os.getenv("SANDBOX_SSH_USER", "")
    ssh_key_path: str = os.getenv("SANDBOX_SSH_KEY", "")
    ssh_port: int = _env_int("SANDBOX_SSH_PORT", 22)
    remote_base_dir: str = os.getenv("SANDBOX_REMOTE_BASE", "/tmp")
    idle_timeout: int = _env_int("SESSION_IDLE_TIMEOUT", 600)
    cleanup_interval: int = _env_int("SESSION_CLEANUP_INTERVAL", 60)


@dataclass
class LimitsConfig:
    """Execution and file-size limits (timeouts in milliseconds, sizes in bytes)"""
    command_timeout_ms: int = _env_int("COMMAND_TIMEOUT", 300000)
    clone_timeout_ms: int = _env_int("CLONE_TIMEOUT", 300000)
    max_file_size: int = _env_int("MAX_FILE_SIZE", 10 * 1024 * 1024)
    max_repo_size: int = _env_int("MAX_REPO_SIZE", 100 * 1024 * 1024)
    max_files_per_request: int = _env_int("MAX_FILES_PER_REQUEST", 50)

    @property
    def command_timeout(self) -> int:
        """Command timeout in seconds."""
        return max(1, self.command_timeout_ms // 1000)

    @property
    def clone_timeout(self) -> int:
        return max(1, self.clone_timeout_ms // 1000)


@dataclass
class AppConfig:
    """Application-level settings"""
    environment: str = os.getenv("APP_ENV", os.getenv("NODE_ENV", "development"))
    port: int = _env_int("PORT", 3000)
    max_tool_rounds: int = _env_int("MAX_TOOL_ROUNDS", 16)
    low_budget_tool_rounds: int = 5
    low_budget_threshold: int = 5000
    tool_result_limit: int = _env_int("TOOL_RESULT_LIMIT", 500)
    analysis_sample_size: int = 50
    execution_strategy: str = os.getenv("EXECUTION_STRATEGY", "autonomous")
    bot_name: str = os.getenv("GIT_BOT_NAME", "Code Pilot Bot")
    bot_email: str = os.getenv("GIT_BOT_EMAIL", "codepilot@example.com")

    def is_production(self) -> bool:
        return self.environment.strip().lower() == "production"


# Create global config instances
aws_config = AWSConfig()
model_config = ModelConfig()
github_config = GitHubConfig()
sandbox_config = SandboxConfig()
limits_config = LimitsConfig()
app_config = AppConfig()


def get_credentials_info() -> str:
    if aws_config.has_profile():
        return f"Using AWS profile: {aws_config.profile_name}"
    elif aws_config.has_explicit_credentials():
        if aws_config.has_session_token():
            return "Using temporary credentials (with session token)"
        return "Using explicit credentials"
    return "Using default credential chain"
