from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="STORYSHORT_", env_file=".env", env_file_encoding="utf-8")

    app_name: str = "storyshort"
    host: str = "0.0.0.0"
    port: int = 8100

    kafka_enabled: bool = False
    kafka_bootstrap_servers: str = "localhost:9092"
    kafka_topic: str = "video_jobs"
    kafka_updates_topic: str = "video_progress"
    kafka_group_id: str = "storyshort-consumer"

    # Object storage configuration
    s3_endpoint_url: str = ""
    s3_region: str | None = None
    s3_public_url: str = ""
    s3_bucket: str = "storyshort-assets"
    s3_access_key: str = ""
    s3_secret_key: str = ""
    s3_addressing_style: str = "virtual"
    storage_folder_prefix: str = "videos"

    # Remote providers
    elevenlabs_api_key: str = ""
    elevenlabs_voice_id: str = "EFbNMe9bCQ0gsl51ZIWn"
    elevenlabs_model_id: str = "eleven_multilingual_v2"
    elevenlabs_base_url: str = "https://api.elevenlabs.io"
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com"
    openai_image_model: str = "dall-e-3"
    image_size: str = "1024x1792"
    # empty disables transcription, captions then use the words-per-minute estimate
    whisper_local_model: str = ""

    provider_timeout: float = 60.0
    provider_retry_attempts: int = 3
    provider_retry_base_delay: float = 0.5

    # Orchestration
    image_concurrency: int = 3
    captions_wpm: int = 150

    # Rendering
    render_width: int = 1080
    render_height: int = 1920
    render_fps: int = 30
    kenburns_max_zoom: float = 1.12
    ffmpeg_binary: str = "ffmpeg"
    render_timeout: float = 900.0
    render_cancel_poll_interval: float = 1.0

    # Progress reporting
    progress_poll_interval: float = 1.0
    progress_timeout: float = 1800.0


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
