from pydantic import BaseModel
from pydantic_settings import BaseSettings
from pathlib import Path
import os
import yaml


class RankingWeights(BaseModel):
    """Weights for scoring trips against a search filter."""
    origin: float = 30.0
    destination: float = 30.0
    string_match_threshold: float = 0.8
    route_boost: float = 40.0
    route_radius_km: float = 25.0
    date: float = 20.0
    date_reason_threshold: float = 15.0
    flex_days: int = 3
    time: float = 20.0
    time_date_gate: float = 0.8
    time_reason_threshold: float = 0.9
    space: float = 10.0
    verified_bonus: float = 5.0
    min_score: float = 20.0
    report_cap: float = 99.0


class ReverseWeights(BaseModel):
    """Weights for scoring pending delivery requests against a trip."""
    origin: float = 40.0
    destination: float = 40.0
    string_match_threshold: float = 0.8
    date: float = 20.0
    date_reason_threshold: float = 0.7
    space: float = 20.0
    verified_bonus: float = 10.0
    min_score: float = 30.0


class Settings(BaseSettings):
    DATABASE_URL: str = "postgresql+asyncpg://postgres@localhost:5432/movever"
    DB_ECHO: bool = False
    API_HOST: str = "127.0.0.1"
    API_PORT: int = 8000
    REDIS_URL: str = "redis://localhost:6379/0"

    # redis | memory | table
    OTC_BACKEND: str = "redis"
    OTC_LENGTH: int = 6
    OTC_TTL_SEC: int = 600
    OTC_COOLDOWN_SEC: int = 300

    GEOCODER_URL: str = "https://nominatim.openstreetmap.org"
    ROUTER_URL: str = "http://router.project-osrm.org"
    GEO_USER_AGENT: str = "MoveVer-App/1.0"
    GEO_TIMEOUT_SEC: float = 5.0

    PAYSTACK_SECRET_KEY: str = "mock_paystack_secret"
    PAYSTACK_BASE_URL: str = "https://api.paystack.co"
    COMMISSION_RATE: float = 0.05

    PUSH_URL: str = ""

    # empty SMTP_HOST logs outgoing mail instead of sending it
    SMTP_HOST: str = ""
    SMTP_PORT: int = 587
    SMTP_USER: str = ""
    SMTP_PASSWORD: str = ""
    MAIL_FROM: str = "no-reply@movever.app"

    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "movever.log"
    LOG_MAX_BYTES: int = 10_000_000

    RANKING: RankingWeights = RankingWeights()
    REVERSE: ReverseWeights = ReverseWeights()

    # Load .env located next to this file (movever/.env) so defaults are overridden
    model_config = {"env_file": str(Path(__file__).resolve().parent / ".env")}


def load_settings() -> Settings:
    """Load settings from application.yaml and merge with environment variables."""
    config_path = Path(__file__).resolve().parent / "application.yaml"

    config_dict = {}

    if config_path.exists():
        with open(config_path, "r") as f:
            yaml_config = yaml.safe_load(f)
            if yaml_config:
                if "database" in yaml_config:
                    db = yaml_config["database"]
                    config_dict["DATABASE_URL"] = db.get("url")
                    config_dict["DB_ECHO"] = db.get("echo")

                if "server" in yaml_config:
                    server = yaml_config["server"]
                    config_dict["API_HOST"] = server.get("host")
                    config_dict["API_PORT"] = server.get("port")

                if "redis" in yaml_config:
                    config_dict["REDIS_URL"] = yaml_config["redis"].get("url")

                if "geo" in yaml_config:
                    geo = yaml_config["geo"]
                    config_dict["GEOCODER_URL"] = geo.get("geocoder_url")
                    config_dict["ROUTER_URL"] = geo.get("router_url")
                    config_dict["GEO_USER_AGENT"] = geo.get("user_agent")
                    config_dict["GEO_TIMEOUT_SEC"] = geo.get("timeout_sec")

                if "otc" in yaml_config:
                    otc = yaml_config["otc"]
                    config_dict["OTC_BACKEND"] = otc.get("backend")
                    config_dict["OTC_LENGTH"] = otc.get("length")
                    config_dict["OTC_TTL_SEC"] = otc.get("ttl_sec")
                    config_dict["OTC_COOLDOWN_SEC"] = otc.get("cooldown_sec")

                if "payments" in yaml_config:
                    pay = yaml_config["payments"]
                    config_dict["PAYSTACK_SECRET_KEY"] = pay.get("secret_key")
                    config_dict["PAYSTACK_BASE_URL"] = pay.get("base_url")
                    config_dict["COMMISSION_RATE"] = pay.get("commission_rate")

                if "notifications" in yaml_config:
                    config_dict["PUSH_URL"] = yaml_config["notifications"].get("push_url")

                if "mail" in yaml_config:
                    mail = yaml_config["mail"]
                    config_dict["SMTP_HOST"] = mail.get("host")
                    config_dict["SMTP_PORT"] = mail.get("port")
                    config_dict["SMTP_USER"] = mail.get("user")
                    config_dict["MAIL_FROM"] = mail.get("from")

                if "logging" in yaml_config:
                    log = yaml_config["logging"]
                    config_dict["LOG_LEVEL"] = log.get("level")
                    config_dict["LOG_FILE"] = log.get("file")

                if "ranking" in yaml_config:
                    ranking = yaml_config["ranking"] or {}
                    if ranking.get("trips"):
                        config_dict["RANKING"] = RankingWeights(**ranking["trips"])
                    if ranking.get("requests"):
                        config_dict["REVERSE"] = ReverseWeights(**ranking["requests"])

    # environment variables win over application.yaml
    return Settings(**{k: v for k, v in config_dict.items() if v is not None and k not in os.environ})


settings = load_settings()
