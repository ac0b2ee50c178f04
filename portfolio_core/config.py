import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, model_validator

try:
    from dotenv import load_dotenv
    load_dotenv()
except ImportError:
    pass


def _env(*keys: str, default: str = "") -> str:
    """Return the first non-empty environment variable among ``keys``."""
    for key in keys:
        value = os.getenv(key)
        if value:
            return value
    return default


class GitHubConfig(BaseModel):
    token: str = Field(default_factory=lambda: _env("GITHUB_TOKEN", "NEXT_PUBLIC_GITHUB_TOKEN"))
    base_url: str = "https://api.github.com"
    timeout: float = 30
    user_agent: str = "portfolio-core"


class ProjectsConfig(BaseModel):
    handle: str = Field(default_factory=lambda: _env("GITHUB_HANDLE"))
    limit: int = Field(default=4, ge=1)
    fetch_count: int = Field(default=10, ge=1, le=100)
    exclude_forks: bool = True
    summary_word_budget: int = Field(default=100, ge=1)
    readme_max_attempts: int = Field(default=1, ge=1)
    readme_retry_delay: float = 1.0

    @model_validator(mode='after')
    def check_fetch_count(self):
        """Fetch at least as many candidates as will be displayed"""
        if self.fetch_count < self.limit:
            self.fetch_count = self.limit
        return self


class SMTPConfig(BaseModel):
    host: str = "smtp.gmail.com"
    port: int = 587
    username: str = Field(default_factory=lambda: _env("EMAIL_USER", "GMAIL_USER"))
    password: str = Field(default_factory=lambda: _env("EMAIL_PASS", "GMAIL_APP_PASSWORD"))
    use_tls: bool = True
    use_ssl: bool = False  # For port 465
    timeout: float = 30


class ContactConfig(BaseModel):
    sender_name: str = "Portfolio Contact Form"
    recipient: str = Field(default_factory=lambda: _env("CONTACT_RECIPIENT"))
    subject_prefix: str = "New Contact Form Submission: "


class Config(BaseModel):
    github: GitHubConfig = Field(default_factory=GitHubConfig)
    projects: ProjectsConfig = Field(default_factory=ProjectsConfig)
    smtp: SMTPConfig = Field(default_factory=SMTPConfig)
    contact: ContactConfig = Field(default_factory=ContactConfig)

    @model_validator(mode='after')
    def infer_recipient(self):
        """Deliver contact messages to the sending account when no recipient is set"""
        if not self.contact.recipient and self.smtp.username:
            self.contact.recipient = self.smtp.username
        return self


def _replace_env_vars(value: Any) -> Any:
    if isinstance(value, str) and value.startswith("${") and value.endswith("}"):
        env_spec = value[2:-1]  # Remove ${ and }

        # KEY:-default_value or KEY:=default_value
        for separator in (":-", ":="):
            if separator in env_spec:
                env_key, default_value = env_spec.split(separator, 1)
                default_value = default_value.strip().strip('"').strip("'")
                return os.getenv(env_key, default_value)
        return os.getenv(env_spec, "")
    elif isinstance(value, dict):
        return {k: _replace_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_replace_env_vars(item) for item in value]
    return value


def _drop_empty(data: Dict[str, Any]) -> Dict[str, Any]:
    """Drop empty strings so unset ${VAR} entries fall back to field defaults"""
    cleaned = {}
    for key, value in data.items():
        if isinstance(value, dict):
            cleaned[key] = _drop_empty(value)
        elif value != "":
            cleaned[key] = value
    return cleaned


def load_yaml_config(config_path: str) -> Dict[str, Any]:
    with open(config_path, 'r', encoding='utf-8') as f:
        config_data = yaml.safe_load(f)

    if not config_data:
        return {}

    config_data = _drop_empty(_replace_env_vars(config_data))

    # Map 'to' to 'recipient' for the contact section
    contact = config_data.get('contact')
    if isinstance(contact, dict) and 'to' in contact and 'recipient' not in contact:
        contact['recipient'] = contact.pop('to')

    return config_data


def get_config(config_path: Optional[str] = None) -> Config:
    if config_path is None:
        config_path = os.getenv('CONFIG_PATH', 'config.yaml')

    config_file = Path(config_path)
    if config_file.exists():
        config_data = load_yaml_config(str(config_file))
        return Config(**config_data)
    else:
        return Config()
