from __future__ import annotations

import os
from dataclasses import dataclass, field

from keepup_checks.settings import DEFAULT_FLAG_TTL_SECONDS, _env_int, _env_str


@dataclass(frozen=True)
class ReceiverSettings:
    host: str = field(default_factory=lambda: _env_str("RECEIVER_HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: _env_int("RECEIVER_PORT", 8787))
    deploy_path: str = field(default_factory=lambda: _env_str("DEPLOY_PATH", "/deploy"))

    # Shared secret the trigger must present.
    deploy_token: str = field(default_factory=lambda: os.getenv("DEPLOY_TOKEN", "").strip())
    token_header: str = field(default_factory=lambda: _env_str("DEPLOY_TOKEN_HEADER", "X-Deploy-Token"))

    # Content API holding the document whose timestamp section gets rewritten.
    github_token: str = field(default_factory=lambda: os.getenv("GITHUB_TOKEN", "").strip())
    content_api_url: str = field(default_factory=lambda: os.getenv("GH_CONTENT_API_URL", "").strip())
    branch: str = field(default_factory=lambda: os.getenv("GH_BRANCH", "").strip())
    commit_message: str = field(
        default_factory=lambda: _env_str("COMMIT_MESSAGE", "chore: auto update README timestamp")
    )
    committer_name: str = field(default_factory=lambda: _env_str("COMMITTER_NAME", "deploy-receiver[bot]"))
    committer_email: str = field(
        default_factory=lambda: _env_str("COMMITTER_EMAIL", "deploy-receiver@users.noreply.github.com")
    )
    timestamp_heading: str = field(default_factory=lambda: _env_str("TIMESTAMP_HEADING", "## 🕒 Last updated"))
    timestamp_local_tz: str = field(default_factory=lambda: _env_str("TIMESTAMP_LOCAL_TZ", "Asia/Shanghai"))
    content_timeout_seconds: float = 30.0

    # Authoritative idempotency flag. Empty db path means an in-process memory store.
    flag_key: str = field(default_factory=lambda: _env_str("FLAG_KEY", "flag"))
    flag_value: str = field(default_factory=lambda: _env_str("FLAG_VALUE", "deployed"))
    flag_ttl_seconds: int = field(default_factory=lambda: _env_int("FLAG_TTL_SECONDS", DEFAULT_FLAG_TTL_SECONDS))
    state_db_path: str = field(default_factory=lambda: os.getenv("RECEIVER_STATE_DB_PATH", "").strip())

    def missing_remediation_config(self) -> list[str]:
        missing: list[str] = []
        if not self.github_token:
            missing.append("GITHUB_TOKEN")
        if not self.content_api_url:
            missing.append("GH_CONTENT_API_URL")
        return missing
