import os
from dataclasses import dataclass
from typing import Dict, Any, Optional, List, Tuple

from dotenv import load_dotenv

DEFAULT_DEPLOYMENT = "gpt-4"
DEFAULT_API_VERSION = "2024-02-01"
DEFAULT_MCP_PORT = 8123
MCP_PATH = "/mcp"

REQUIRED_ENV_VARS = ['AZURE_OPENAI_API_KEY', 'AZURE_OPENAI_ENDPOINT']


class ConfigurationError(Exception):
    """Missing or unusable provider configuration, detected before connecting."""


def getenv_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip()
    return value if value else default


def getenv_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        return default


def parse_port(value: str) -> int:
    port = int(value.strip())
    if not 0 < port < 65536:
        raise ValueError(f"port out of range: {port}")
    return port


def mcp_server_url(port: int) -> str:
    return f"http://localhost:{port}{MCP_PATH}"


@dataclass
class AppConfig:
    api_key: str = ""
    endpoint: str = ""
    deployment: str = DEFAULT_DEPLOYMENT
    api_version: str = DEFAULT_API_VERSION

    mcp_port: int = DEFAULT_MCP_PORT
    max_tokens: int = 1000
    max_tool_depth: int = 1
    history_max_messages: int = 0
    tool_result_max_chars: int = 8000

    system_prompt: str = ""
    log_level: str = "INFO"
    use_color: bool = True

    @classmethod
    def load(cls, cli_args: Optional[Dict[str, Any]] = None) -> 'AppConfig':
        load_dotenv()

        config = cls(
            api_key=getenv_str('AZURE_OPENAI_API_KEY', ""),
            endpoint=getenv_str('AZURE_OPENAI_ENDPOINT', ""),
            deployment=getenv_str('AZURE_OPENAI_DEPLOYMENT', DEFAULT_DEPLOYMENT),
            api_version=getenv_str('AZURE_OPENAI_API_VERSION', DEFAULT_API_VERSION),
            max_tokens=getenv_int('MAX_TOKENS', 1000),
            log_level=getenv_str('LOG_LEVEL', "INFO").upper(),
        )

        cli_args = cli_args or {}
        for key in ['mcp_port', 'max_tokens', 'max_tool_depth', 'history_max_messages',
                    'tool_result_max_chars', 'system_prompt', 'log_level', 'use_color']:
            if cli_args.get(key) is not None:
                setattr(config, key, cli_args[key])

        if cli_args.get('use_color') is None and os.getenv('NO_COLOR'):
            config.use_color = False

        config.max_tool_depth = max(1, config.max_tool_depth)
        config.history_max_messages = max(0, config.history_max_messages)
        return config

    @property
    def model(self) -> str:
        # litellm routes "azure/<deployment>" to the Azure OpenAI chat completions API
        return f"azure/{self.deployment}"

    @property
    def mcp_url(self) -> str:
        return mcp_server_url(self.mcp_port)

    def provider_kwargs(self) -> Dict[str, Any]:
        return {
            "api_key": self.api_key,
            "api_base": self.endpoint,
            "api_version": self.api_version,
        }

    def validate(self) -> None:
        ok, missing = check_provider_auth(self)
        if not ok:
            raise ConfigurationError(f"Missing Azure OpenAI configuration: {', '.join(missing)} is not set")


@dataclass
class Metrics:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    requests: int = 0

    def update(self, prompt: int = 0, completion: int = 0) -> None:
        self.requests += 1
        self.prompt_tokens += prompt
        self.completion_tokens += completion

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def summary(self) -> str:
        return f"{self.requests} requests, {self.prompt_tokens}/{self.completion_tokens}/{self.total_tokens} tokens"


def check_provider_auth(config: AppConfig) -> Tuple[bool, List[str]]:
    values = {
        'AZURE_OPENAI_API_KEY': config.api_key,
        'AZURE_OPENAI_ENDPOINT': config.endpoint,
    }
    missing = [var for var in REQUIRED_ENV_VARS if not values.get(var)]
    return len(missing) == 0, missing
