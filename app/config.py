from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = ""
    environment: str = "dev"
    # Normalization settings
    default_normalization_method: str = "z_score"
    default_renorm_threshold: float = 5.0  # percent of new submissions since last full pass
    equating_distribution_points: int = 101  # 0th..100th percentile grid
    # Batch settings
    batch_chunk_size: int = 1000
    auto_schedule_batch: bool = True
    # Rank staleness: full rank pass is due after this many new submissions
    rank_refresh_every: int = 500
    # Cutoff prediction settings
    cutoff_selection_ratios: dict[str, float] = {
        "UR": 0.15,
        "OBC": 0.18,
        "EWS": 0.18,
        "SC": 0.20,
        "ST": 0.25,
    }
    cutoff_default_ratio: float = 0.15
    cutoff_margin: float = 5.0
    cutoff_high_confidence_points: int = 100


settings = Settings()  # type: ignore
