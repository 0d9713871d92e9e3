from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # App
    APP_ENV: str = "development"
    DEBUG: bool = True

    # Database
    DATABASE_URL: str = "sqlite:///./promotions.db"

    # Pricing defaults
    DEFAULT_CURRENCY: str = "USD"
    DEFAULT_COUNTRY: str = "CL"        # used by location_based conditions when neither user nor cart says
    DEFAULT_USER_SEGMENT: str = "regular"

    # Suggestions
    SUGGESTION_WINDOW_DAYS: int = 14   # validity window of generated drafts
    SUGGESTION_CATEGORY_DISCOUNT: float = 15.0
    SUGGESTION_HOLIDAY_DISCOUNT: float = 20.0
    SUGGESTION_HOLIDAY_MIN_PURCHASE: float = 50.0

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )


settings = Settings()
