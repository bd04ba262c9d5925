from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, List


class Settings(BaseSettings):
    # Lobby rules
    min_players: int = 3
    default_num_saboteurs: int = 1

    # Murder window: delay after an elimination reveal before traitors may vote
    murder_delay_seconds: float = 30.0
    bot_murder_delay_seconds: float = 5.0  # every living traitor is a bot
    auto_reveal_delay: float = 3.0         # host reveals once all traitors voted

    # Bot voters fire on independent uniform delays in this window
    bot_vote_min_delay: float = 0.5
    bot_vote_max_delay: float = 2.0

    # None keeps re-voting on ties forever; N breaks the tie randomly after N re-votes
    max_tie_revotes: Optional[int] = None

    # Transport
    join_timeout_seconds: float = 20.0
    peer_id_retries: int = 3
    peer_id_settle_delay: float = 0.5
    relay_url: str = "ws://localhost:8000"

    # Local persistence of the resumable snapshot
    snapshot_path: str = "data/traitors_state.json"

    allowed_origins: List[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
    ]
    debug: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
    )


settings = Settings()
