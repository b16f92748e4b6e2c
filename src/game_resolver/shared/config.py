"""アプリケーション全体で共有する設定ローダー。"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import AnyHttpUrl, BaseModel, Field, SecretStr, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError

EnvName = Literal["local", "test", "staging", "production"]


class IGDBSettings(BaseModel):
    """IGDB API の資格情報と送信制御。"""

    client_id: str = Field(..., description="IGDB API client id")
    client_secret: SecretStr = Field(..., description="IGDB API client secret")
    token_url: AnyHttpUrl = Field(
        "https://id.twitch.tv/oauth2/token", description="Twitch OAuth2 token endpoint"
    )
    refresh_margin_seconds: int = Field(
        300,
        ge=0,
        description="アクセストークン有効期限のこの秒数前になったら再取得する",
    )
    qps: float = Field(4.0, gt=0, description="IGDB への秒間リクエスト上限")
    max_batch_size: int = Field(500, ge=1, le=500, description="1 リクエストに含める最大件数")
    fan_out: int = Field(4, ge=1, description="同時に送信するページ数")
    max_attempts: int = Field(3, ge=1, description="一時的エラー時の最大試行回数")
    backoff_factor: float = Field(0.5, ge=0, description="指数バックオフの基準秒数")
    max_backoff_seconds: float = Field(8.0, ge=0, description="バックオフ待機の上限")
    request_timeout_seconds: float = Field(30.0, gt=0, description="1 リクエストのタイムアウト")


class ResolverSettings(BaseModel):
    """自動確定の閾値。既定値は持たせず必ず外部から与える。"""

    high_confidence: float = Field(..., ge=0, le=1, description="自動確定に必要な最高スコア")
    min_gap: float = Field(..., ge=0, le=1, description="1 位と 2 位の最小スコア差")
    candidate_limit: int = Field(..., ge=1, description="承認待ちに保持する候補数")
    year_tolerance: int = Field(1, ge=0, description="発売年一致とみなす許容差")


class ReconcilerSettings(BaseModel):
    """未解決エントリの再照合ジョブ設定。"""

    concurrency: int = Field(4, ge=1, description="同時に再照合するエントリ数")
    interval_seconds: int = Field(3600, ge=1, description="定期実行の間隔")


class WebhookSettings(BaseModel):
    """Webhook フィルタの判定パラメータ。"""

    excluded_regions: tuple[int, ...] = Field((), description="追跡対象外のリリース地域 ID")
    min_release_year: int = Field(1950, description="これより前の発売日は不正とみなす")
    max_years_ahead: int = Field(10, ge=0, description="現在から何年先までの発売日を許容するか")
    tracked_categories: tuple[int, ...] = Field(
        (0, 2, 4, 8, 9), description="差分適用の対象とする IGDB カテゴリ"
    )


class StorageSettings(BaseModel):
    """データ保存関連の設定。"""

    sqlite_path: Path = Field(Path("./var/game_resolver.db"), description="SQLite DB のパス")
    busy_timeout_seconds: float = Field(
        5.0, gt=0, description="並行書き込みでロック待ちする最大秒数"
    )


class AppSettings(BaseSettings):
    """共有設定。`.env` 読み込みと環境変数バリデーションを担う。"""

    model_config = SettingsConfigDict(
        env_file=(".env", ".env.local"),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    environment: EnvName = Field("local", description="実行環境識別子")
    log_level: str = Field("INFO", description="ルートロガーのログレベル")
    log_json: bool = Field(False, description="JSON 形式でログを出力する")
    igdb: IGDBSettings
    resolver: ResolverSettings
    reconciler: ReconcilerSettings = Field(default_factory=ReconcilerSettings)
    webhooks: WebhookSettings = Field(default_factory=WebhookSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """設定をロードし、再利用する。

    LRU キャッシュによりプロセス内での重複読み込みを防ぎ、
    `pytest` などから `get_settings.cache_clear()` を呼び出すことで再読込できる。
    """

    try:
        return AppSettings()
    except ValidationError as exc:  # pragma: no cover - ValidationError carries context
        raise ConfigurationError(str(exc)) from exc


__all__ = [
    "AppSettings",
    "EnvName",
    "IGDBSettings",
    "ReconcilerSettings",
    "ResolverSettings",
    "StorageSettings",
    "WebhookSettings",
    "get_settings",
]
