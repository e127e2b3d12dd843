"""Application configuration models."""

from typing import List, Optional

from pydantic import BaseModel, Field

DEFAULT_THOR_FLAGS = [
    "--utc",
    "--rfc3339",
    "--nocsv",
    "--nolog",
    "--nothordb",
    "--module",
    "Filescan",
    "--allhds",
    "--json",
]

DEFAULT_PACKAGE_NAME = "Custom.DFIR.Yara.AllRules.zip"


class ThorConfig(BaseModel):
    license_path: str = "thor-lite-license.lic"
    rules_path: str = "custom-signatures"
    config_path: str = "config/thor.yml"
    flags: List[str] = Field(default_factory=lambda: list(DEFAULT_THOR_FLAGS))


class PyroServerConfig(BaseModel):
    endpoint: str = "http://localhost:8080"
    api_key: Optional[str] = None
    timeout_seconds: float = Field(default=300, gt=0)


class ScanningConfig(BaseModel):
    temp_dir: Optional[str] = None
    package_path: str = DEFAULT_PACKAGE_NAME
    package_sha256: Optional[str] = None
    execution_timeout_seconds: Optional[float] = Field(default=3600, gt=0)


class StoreConfig(BaseModel):
    path: str = "yara_rules.db"
    rules_dir: str = "custom-signatures/yara"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: Optional[str] = None


class PyroConfig(BaseModel):
    thor: ThorConfig = Field(default_factory=ThorConfig)
    pyro: PyroServerConfig = Field(default_factory=PyroServerConfig)
    scanning: ScanningConfig = Field(default_factory=ScanningConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def package_name(self) -> str:
        return DEFAULT_PACKAGE_NAME

    @property
    def package_url(self) -> str:
        return f"{self.pyro.endpoint.rstrip('/')}/api/tools/{self.package_name}"

    @property
    def results_url(self) -> str:
        return f"{self.pyro.endpoint.rstrip('/')}/api/scan-results"
