import json

import structlog
from sqlalchemy import Column, DateTime, String, Text, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.sql import func

from risk_engine import RuleSet, default_rules, rules_from_mapping

log = structlog.get_logger(__name__)

RULES_KEY = "vitalstream_rules"
THEME_KEY = "vitalstream_theme"
THEMES = ("light", "dark")
DEFAULT_THEME = "light"

Base = declarative_base()


class Setting(Base):
    __tablename__ = "settings"
    key = Column(String, primary_key=True)
    value = Column(Text, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


def init_db(db_url: str = "sqlite:///vitalstream.db"):
    kwargs = {}
    if db_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if db_url in ("sqlite://", "sqlite:///:memory:"):
            # one shared connection, otherwise every session sees a fresh empty db
            kwargs["poolclass"] = StaticPool
    engine = create_engine(db_url, **kwargs)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


def get_setting(Session, key: str) -> str | None:
    with Session() as s:
        row = s.get(Setting, key)
        return row.value if row else None


def put_setting(Session, key: str, value: str) -> None:
    with Session() as s:
        row = s.get(Setting, key)
        if row is None:
            s.add(Setting(key=key, value=value))
        else:
            row.value = value
        s.commit()


def load_rules(Session) -> RuleSet:
    raw = get_setting(Session, RULES_KEY)
    if not raw:
        return default_rules()
    try:
        parsed = json.loads(raw)
    except ValueError:
        log.warning("rules_load_failed", reason="invalid json")
        return default_rules()
    if not isinstance(parsed, dict):
        log.warning("rules_load_failed", reason="not an object")
        return default_rules()
    return rules_from_mapping(parsed)


def save_rules(Session, rules: RuleSet) -> None:
    put_setting(Session, RULES_KEY, json.dumps(rules.to_mapping()))
    log.info("rules_saved", **rules.to_mapping())


def load_theme(Session) -> str:
    saved = get_setting(Session, THEME_KEY)
    return saved if saved in THEMES else DEFAULT_THEME


def save_theme(Session, theme: str) -> str:
    if theme not in THEMES:
        raise ValueError(f"theme must be one of {THEMES}, got {theme!r}")
    put_setting(Session, THEME_KEY, theme)
    return theme
