"""
Configuration Management for ddcev

Loads solver and localizer options from YAML config files into a typed
record. Only the artifact location and the debug flag have defaults; the
numeric options (ROI volume, cutoff, threshold) must be given explicitly.

Usage:
    from ddcev.config import load_config

    cfg = load_config()  # configs/default_localization.yaml
    cfg = load_config("configs/custom.yaml")

    cfg.require_solver()
    print(cfg.roi_volume, cfg.output_path)
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

import yaml

from ddcev.errors import ConfigurationError

# File is at: src/ddcev/config.py
# Project root: src/ddcev -> src -> project_root
_THIS_FILE = Path(__file__)
PROJECT_ROOT = _THIS_FILE.parent.parent.parent

DEFAULT_CONFIG_PATH = PROJECT_ROOT / "configs" / "default_localization.yaml"

CONFIG_SECTION = "localization"


@dataclass
class LocalizationConfig:
    """
    Options recognised by the concentration solver and power localizer.

    Attributes
    ----------
    roi_volume : float, optional
        Volume of the ROI searched around each voxel, in the cubed units of
        the voxel centroids.
    cutoff : float, optional
        Fraction of the leading global singular value below which global
        modes are truncated.
    threshold : float, optional
        Minimum leading concentration eigenvalue for a voxel to be
        localizable.
    directory : str
        Directory holding the concentration file. Default ".".
    filename : str, optional
        Concentration file name.
    debug : bool
        Run per-record consistency checks while solving. Default False.
    """

    roi_volume: float | None = None
    cutoff: float | None = None
    threshold: float | None = None
    directory: str = "."
    filename: str | None = None
    debug: bool = False

    @property
    def output_path(self) -> Path:
        """Full path of the concentration file."""
        if not self.filename:
            raise ConfigurationError(
                "filename is not set; cannot locate the concentration file"
            )
        return Path(self.directory) / self.filename

    def require_solver(self) -> None:
        """Validate the options the concentration solver needs."""
        if self.roi_volume is None:
            raise ConfigurationError("roi_volume is required by the concentration solver")
        if not self.roi_volume > 0:
            raise ConfigurationError(
                f"roi_volume must be positive, got {self.roi_volume}"
            )
        if not self.filename:
            raise ConfigurationError("filename is required by the concentration solver")

    def require_localizer(self) -> None:
        """Validate the options the power localizer needs."""
        if self.cutoff is None:
            raise ConfigurationError("cutoff is required by the power localizer")
        if self.threshold is None:
            raise ConfigurationError("threshold is required by the power localizer")
        if not self.filename:
            raise ConfigurationError("filename is required by the power localizer")
        validate_truncation(self.cutoff, self.threshold)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, values: dict[str, Any]) -> "LocalizationConfig":
        """
        Build a config from a plain mapping.

        Raises
        ------
        ConfigurationError
            If the mapping carries unrecognised keys or wrongly typed values.
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ConfigurationError(
                f"Unrecognised configuration options: {', '.join(unknown)}. "
                f"Expected a subset of: {', '.join(sorted(known))}"
            )

        kwargs: dict[str, Any] = {}
        for name in ("roi_volume", "cutoff", "threshold"):
            value = values.get(name)
            if value is None:
                continue
            try:
                kwargs[name] = float(value)
            except (TypeError, ValueError) as e:
                raise ConfigurationError(
                    f"{name} must be a number, got {value!r}"
                ) from e
        if values.get("directory") is not None:
            kwargs["directory"] = str(values["directory"])
        if values.get("filename") is not None:
            kwargs["filename"] = str(values["filename"])
        if values.get("debug") is not None:
            if not isinstance(values["debug"], bool):
                raise ConfigurationError(
                    f"debug must be true or false, got {values['debug']!r}"
                )
            kwargs["debug"] = values["debug"]
        return cls(**kwargs)


def validate_truncation(cutoff: float, threshold: float) -> None:
    """
    Check the rank-truncation parameters.

    Raises
    ------
    ConfigurationError
        If cutoff is outside [0, 1) or threshold outside [0, 1].
    """
    if not 0.0 <= cutoff < 1.0:
        raise ConfigurationError(f"cutoff must lie in [0, 1), got {cutoff}")
    if not 0.0 <= threshold <= 1.0:
        raise ConfigurationError(f"threshold must lie in [0, 1], got {threshold}")


def get_config_path(config_name: str = "default_localization.yaml") -> Path:
    """
    Get the full path to a config file.

    Parameters
    ----------
    config_name : str
        Name of the config file (with or without .yaml extension).

    Returns
    -------
    Path
        Full path to the config file.
    """
    if not config_name.endswith(".yaml"):
        config_name = f"{config_name}.yaml"
    return PROJECT_ROOT / "configs" / config_name


def load_config(config_path: str | Path | None = None) -> LocalizationConfig:
    """
    Load options from a YAML file.

    The file must hold a top-level ``localization`` mapping.

    Parameters
    ----------
    config_path : str or Path, optional
        Path to YAML config file. If None, uses default_localization.yaml.

    Returns
    -------
    LocalizationConfig
        Parsed options. Missing numeric options stay None and are reported
        by ``require_solver``/``require_localizer`` at operation entry.

    Raises
    ------
    ConfigurationError
        If the file is missing, unreadable, malformed or lacks the
        ``localization`` section.

    Examples
    --------
    >>> cfg = load_config()
    >>> cfg.threshold
    0.9
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH
    else:
        config_path = Path(config_path)

    if not config_path.exists():
        raise ConfigurationError(f"Config file not found: {config_path}")

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"YAML parse error in {config_path}: {e}") from e
    except IOError as e:
        raise ConfigurationError(f"Cannot read {config_path}: {e}") from e

    if not isinstance(raw, dict) or not isinstance(raw.get(CONFIG_SECTION), dict):
        raise ConfigurationError(
            f"Config file {config_path} has no '{CONFIG_SECTION}' section"
        )
    return LocalizationConfig.from_dict(raw[CONFIG_SECTION])


def save_config(config: LocalizationConfig, config_path: str | Path) -> None:
    """
    Save options to a YAML file under the ``localization`` section.

    Parameters
    ----------
    config : LocalizationConfig
        Options to write.
    config_path : str or Path
        Output path for the YAML file.
    """
    config_path = Path(config_path)
    config_path.parent.mkdir(parents=True, exist_ok=True)

    with open(config_path, "w", encoding="utf-8") as f:
        yaml.dump(
            {CONFIG_SECTION: config.to_dict()},
            f,
            default_flow_style=False,
            sort_keys=False,
        )
