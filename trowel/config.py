import os

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, TomlConfigSettingsSource


class ProxyConfig(BaseModel):
    backend: str
    rewrite: str | None = None


class Settings(BaseSettings):
    # Build
    target: str = "index.html"
    dist: str = "dist"
    release: bool = False
    public_url: str = "/"
    workers: int = Field(default_factory=lambda: os.cpu_count() or 4)

    # Watch
    watch: list[str] = []  # Empty -> the template's directory
    ignore: list[str] = []
    debounce_seconds: float = 1.0

    # Server
    host: str = "127.0.0.1"
    port: int = 8080
    hot_reload: bool = True
    open: bool = False  # Open a browser once serving
    proxy_backend: str | None = None
    proxy_rewrite: str | None = None
    proxies: list[ProxyConfig] = []

    # External tools
    cargo_bin: str = "cargo"
    wasm_bindgen_bin: str = "wasm-bindgen"
    sass_bin: str = "sass"

    # Project metadata overrides (read from Cargo.toml when unset)
    crate_name: str | None = None
    target_dir: str | None = None

    debug: bool = False

    model_config = {
        "env_prefix": "TROWEL_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "toml_file": "Trowel.toml",
        "extra": "ignore",
    }

    @field_validator("public_url")
    @classmethod
    def _normalise_public_url(cls, value: str) -> str:
        value = "/" + value.strip("/")
        return value if value == "/" else value + "/"

    @field_validator("workers")
    @classmethod
    def _at_least_one_worker(cls, value: int) -> int:
        return max(1, value)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
        )

    def all_proxies(self) -> list[ProxyConfig]:
        """The single ``proxy_backend`` shorthand takes precedence over ``proxies``."""
        if self.proxy_backend:
            return [ProxyConfig(backend=self.proxy_backend, rewrite=self.proxy_rewrite)]
        return list(self.proxies)


settings = Settings()
