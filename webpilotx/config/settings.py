from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, List


class Settings(BaseSettings):
    # Supabase
    supabase_url: str = ""
    supabase_key: str = ""
    supabase_service_role_key: Optional[str] = None  # Used by background workers (bypasses RLS)

    # Filesystem layout
    pages_dir: Path = Path("./pages_dir")  # pages/<page_id> working trees, deployments/<id>.log
    systemd_unit_dir: Path = Path.home() / ".config" / "systemd" / "user"
    env_file_name: str = ".env"

    # External tools
    git_binary: str = "git"
    git_base_url: str = "https://github.com"
    build_shell: str = "/bin/sh"
    systemctl_binary: str = "systemctl"
    runtime_binary: str = "/usr/bin/node"
    service_entry_script: str = "index.js"
    service_name_prefix: str = "webpilotx"

    # Deployments
    deploy_timeout_seconds: int = 3600  # 0 disables the deadline
    command_timeout_seconds: int = 60  # per systemctl call
    log_stream_poll_interval: float = 1.0
    strict_provisioning: bool = False  # fail the deployment when systemctl calls fail
    reconcile_orphans_on_startup: bool = True

    # Webhooks
    webhook_secret: Optional[str] = None  # Falls back to <pages_dir>/webhook_secret

    # App
    app_name: str = "webpilotx-backend"
    debug: bool = False
    environment: str = "development"  # development | staging | production
    log_level: str = "INFO"
    cors_origins: str = "http://localhost:3000,http://localhost:5173,http://127.0.0.1:3000,http://127.0.0.1:5173"
    rate_limit: str = "100/minute"  # slowapi format, e.g. "100/minute"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def get_cors_origins_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def working_trees_dir(self) -> Path:
        return Path(self.pages_dir) / "pages"

    @property
    def deployment_logs_dir(self) -> Path:
        return Path(self.pages_dir) / "deployments"

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        env_prefix="",  # No prefix needed
        extra="ignore"
    )


settings = Settings()
