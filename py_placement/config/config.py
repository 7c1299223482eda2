from pathlib import Path
from dotenv import dotenv_values
from pydantic import Field
from pydantic_settings import BaseSettings

import os

# Explicitly load .env for local/dev environments only if values are missing from the environment
BASE_DIR = Path(__file__).resolve().parent.parent.parent
env_file = BASE_DIR / ".env"

if env_file.exists():
    file_env = dotenv_values(env_file)
    missing_keys = {k: v for k, v in file_env.items() if k not in os.environ and v is not None}
    for k, v in missing_keys.items():
        os.environ[k] = v


class Settings(BaseSettings):
    """Placement settings pulled from PLACEMENT_* environment variables."""

    # Logging Configuration
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="Logging format (json or console)")

    # Reproducibility
    seed: int = Field(default=0, ge=0, description="Default seed for noise and placement")

    # Analysis Configuration
    analysis_resolution: int = Field(default=256, ge=2, description="Terrain analysis grid resolution")
    biome_resolution: int = Field(default=128, ge=2, description="Biome map resolution")

    # Density Configuration
    adaptive_density: bool = Field(default=True, description="Enable environment-driven density")
    global_density_multiplier: float = Field(default=1.0, ge=0.0, description="Global density multiplier")
    density_grid_resolution: int = Field(default=128, ge=1, description="Coarse global density grid resolution")

    # Rule Engine Configuration
    rule_threshold: float = Field(default=0.5, ge=0.0, le=1.0, description="Average rule score needed to place")
    enable_rule_cache: bool = Field(default=True, description="Cache rule verdicts")
    rule_cache_size: int = Field(default=1000, ge=1, description="Maximum cached verdicts")
    rule_cache_ttl: float = Field(default=60.0, gt=0.0, description="Rule cache TTL in seconds")

    # Ecosystem Configuration
    max_organisms: int = Field(default=10000, ge=0, description="Maximum simulated organisms")
    simulation_speed: float = Field(default=1.0, ge=0.0, description="Ageing speed multiplier")

    # Placement Configuration
    placement_steps_per_slice: int = Field(default=50, ge=1, description="Work units per incremental slice")
    vegetation_grid_cell_size: float = Field(default=5.0, gt=0.0, description="Grid cell size for vegetation runs")
    structure_grid_cell_size: float = Field(default=10.0, gt=0.0, description="Grid cell size for structure runs")

    class Config:
        env_prefix = "PLACEMENT_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # The shared .env may hold unrelated keys


# Instantiate singleton settings object
settings = Settings()
