"""Application configuration and settings management."""

from pathlib import Path
from typing import Any, Literal, Optional

import json
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration loaded from environment variables or defaults."""

    model_config = SettingsConfigDict(
        env_prefix="CR_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
    )

    app_name: str = "Courier Route Optimization API"
    api_prefix: str = "/api"
    data_root: Path = Field(default=Path("data"), description="Root directory for persisted run outputs.")
    frontend_allowed_origins: tuple[str, ...] = Field(
        default=(
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ),
        description="Permitted web origins for browser clients (CORS).",
    )

    # OSRM
    osrm_base_url: Optional[str] = Field(
        default=None,
        description="Base URL for the OSRM routing service (e.g., http://localhost:5000).",
    )
    osrm_profile: Literal["driving", "bike", "foot"] = Field(
        default="driving",
        description="OSRM profile to use when computing travel times.",
    )
    osrm_timeout_seconds: float = Field(default=15.0, gt=0.0)
    osrm_max_retries: int = Field(default=2, ge=0)
    osrm_backoff_seconds: float = Field(default=0.5, ge=0.0)

    # Supabase configuration
    supabase_url: Optional[str] = Field(
        default=None,
        description="Supabase project URL (e.g., https://xxx.supabase.co).",
    )
    supabase_key: Optional[str] = Field(
        default=None,
        description="Supabase service role key for backend operations.",
    )

    # Route sequencing
    average_speed_kmh: float = Field(default=40.0, gt=0.0, description="Free-flow speed for haversine fallback.")
    road_distance_factor: float = Field(
        default=1.3,
        ge=1.0,
        description="Multiplier applied to straight-line distance when OSRM is unavailable.",
    )
    pickup_service_minutes: float = Field(default=5.0, ge=0.0)
    delivery_service_minutes: float = Field(default=3.0, ge=0.0)
    distance_normalization_km: float = Field(default=50.0, gt=0.0)
    target_delivery_minutes: float = Field(
        default=45.0,
        gt=0.0,
        description="Promised delivery time from order creation when no explicit window exists.",
    )
    default_algorithm: str = Field(default="enhanced_nearest")
    exact_max_orders: int = Field(default=4, ge=1, le=5)
    random_seed: Optional[int] = Field(default=42, description="Seed for randomized solvers; unset for nondeterministic runs.")
    ga_population_size: int = Field(default=40, ge=4)
    ga_generations: int = Field(default=120, ge=1)
    ga_stall_generations: int = Field(default=25, ge=1)
    ga_crossover_rate: float = Field(default=0.8, ge=0.0, le=1.0)
    ga_mutation_rate: float = Field(default=0.2, ge=0.0, le=1.0)
    ga_tournament_size: int = Field(default=3, ge=2)
    ga_elite_count: int = Field(default=2, ge=0)
    sa_initial_temperature: float = Field(default=5.0, gt=0.0)
    sa_cooling_rate: float = Field(default=0.995, gt=0.0, lt=1.0)
    sa_min_temperature: float = Field(default=0.01, gt=0.0)
    sa_max_iterations: int = Field(default=5000, ge=1)
    solver_time_limit_seconds: int = Field(default=2, ge=1)
    solver_first_solution_strategy: str = Field(default="PARALLEL_CHEAPEST_INSERTION")
    solver_local_search_metaheuristic: str = Field(default="AUTOMATIC")

    # Batching
    max_orders_per_batch: int = Field(default=3, ge=1)
    max_deviation_km: float = Field(default=5.0, gt=0.0)
    max_vendor_distance_km: float = Field(default=10.0, gt=0.0)
    batch_cluster_min_orders: int = Field(
        default=12,
        ge=2,
        description="Ready-order pools at least this large are split into pickup clusters before batching.",
    )

    # Live reoptimization
    reoptimization_cooldown_minutes: float = Field(default=5.0, ge=0.0)
    max_reoptimizations_per_hour: int = Field(default=6, ge=1)
    improvement_threshold: float = Field(
        default=5.0,
        ge=0.0,
        description="Minimum optimization score gain (0-100 scale) before a reoptimized route replaces the current one.",
    )
    significant_time_saving_minutes: float = Field(default=5.0, ge=0.0)
    significant_distance_saving_km: float = Field(default=2.0, ge=0.0)
    significant_score_improvement: float = Field(default=10.0, ge=0.0)
    urgent_time_saving_minutes: float = Field(default=15.0, ge=0.0)
    off_route_threshold_km: float = Field(default=2.0, gt=0.0)
    incident_impact_radius_km: float = Field(default=5.0, gt=0.0)

    # Performance monitoring
    slow_calculation_threshold_ms: float = Field(default=5000.0, gt=0.0)
    low_score_threshold: float = Field(default=70.0, ge=0.0, le=100.0)
    high_memory_threshold_mb: float = Field(default=100.0, gt=0.0)
    overload_concurrency: int = Field(default=8, ge=1)

    # Preparation time prediction
    default_preparation_minutes: float = Field(default=25.0, gt=0.0)
    default_preparation_variance_minutes: float = Field(default=10.0, ge=0.0)
    default_complexity_factor: float = Field(default=0.1, ge=0.0)
    default_kitchen_efficiency: float = Field(default=0.8, ge=0.0, le=2.0)
    peak_hours: tuple[int, ...] = Field(default=(11, 12, 13, 18, 19, 20))
    peak_multiplier: float = Field(default=1.2, ge=1.0)
    min_preparation_minutes: float = Field(default=10.0, ge=0.0)

    @field_validator("data_root", mode="before")
    @classmethod
    def _expand_path(cls, value: Any) -> Path:
        path_value = value if isinstance(value, Path) else Path(str(value))
        return path_value.expanduser().resolve()

    @field_validator("frontend_allowed_origins", mode="before")
    @classmethod
    def _parse_str_tuple_from_env(cls, value: Any) -> tuple[str, ...]:
        """Parse string tuple from environment variable (comma-separated or JSON array)."""
        if isinstance(value, tuple):
            return value
        if isinstance(value, list):
            return tuple(str(item) for item in value)
        if isinstance(value, str):
            try:
                parsed = json.loads(value)
                if isinstance(parsed, list):
                    return tuple(str(item) for item in parsed)
            except (json.JSONDecodeError, TypeError):
                pass
            if "," in value:
                return tuple(item.strip() for item in value.split(",") if item.strip())
            if value.strip():
                return (value.strip(),)
        return tuple()

    @field_validator("peak_hours", mode="before")
    @classmethod
    def _parse_int_tuple_from_env(cls, value: Any) -> tuple[int, ...]:
        """Parse integer tuple from environment variable (comma-separated or JSON array)."""
        if isinstance(value, tuple):
            return value
        if isinstance(value, list):
            return tuple(int(item) for item in value)
        if isinstance(value, str):
            try:
                parsed = json.loads(value)
                if isinstance(parsed, list):
                    return tuple(int(item) for item in parsed)
            except (json.JSONDecodeError, TypeError, ValueError):
                pass
            if "," in value:
                return tuple(int(item.strip()) for item in value.split(",") if item.strip())
            if value.strip():
                try:
                    return (int(value.strip()),)
                except ValueError:
                    return tuple()
        return tuple()


settings = Settings()
