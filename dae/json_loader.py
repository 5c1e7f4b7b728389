from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Union

from .conditions import InitialConditions, parse_assignments
from .equations import compile_equations
from .model_parser import parse_model
from .problem import DAEProblem, SolverType
from .settings import AnalyzerSettings, DasslSettings, SolverSettings


JsonDict = Dict[str, Any]

_DASSL_KEYS = {
    "rtol",
    "atol",
    "max_order",
    "initial_step",
    "min_step",
    "max_step",
    "safety_factor",
    "max_consecutive_failures",
}


def _parse_parameters(cfg: Union[str, JsonDict, None]) -> Dict[str, float]:
    """Parse the ``parameters`` section (mapping or ``"k=2; c=0.5"`` text)."""
    if cfg is None:
        return {}
    if isinstance(cfg, str):
        return parse_assignments(cfg)
    if isinstance(cfg, dict):
        return {str(k): float(v) for k, v in cfg.items()}
    raise ValueError("'parameters' must be a mapping or a 'name=value; ...' string.")


def _parse_equations(cfg: Union[str, List[str]]) -> List[str]:
    if isinstance(cfg, str):
        return cfg.splitlines()
    if isinstance(cfg, list) and all(isinstance(line, str) for line in cfg):
        return list(cfg)
    raise ValueError("'equations' must be a list of strings or a multi-line string.")


def _parse_initial_conditions(cfg: Union[str, JsonDict, List[float]]) -> InitialConditions:
    """Parse the ``initial_conditions`` section."""
    if isinstance(cfg, str):
        return InitialConditions.from_string(cfg)
    if isinstance(cfg, dict):
        return InitialConditions.from_mapping(cfg)
    if isinstance(cfg, list):
        return InitialConditions.from_values(cfg)
    raise ValueError("'initial_conditions' must be a mapping, a list or a string.")


def _parse_time(cfg: JsonDict) -> Dict[str, float]:
    if "t1" not in cfg:
        raise ValueError("The 'time' section requires 't1'.")
    return {"start_time": float(cfg.get("t0", 0.0)), "end_time": float(cfg["t1"])}


def _parse_solver(cfg: JsonDict, time_cfg: Dict[str, float]):
    """
    Parse the ``solver`` section into (method, SolverSettings, DasslSettings).

    Fixed-step keys (``intervals``, ``newton_tolerance``, ...) go to
    :class:`SolverSettings`; tolerances and step limits go to
    :class:`DasslSettings`. ``max_newton_iterations`` applies to both.
    """
    cfg = dict(cfg)
    method = SolverType.from_name(cfg.pop("method", "dassl"))

    dassl_cfg = {k: cfg.pop(k) for k in list(cfg) if k in _DASSL_KEYS}
    if "max_newton_iterations" in cfg:
        dassl_cfg["max_newton_iterations"] = cfg["max_newton_iterations"]

    settings = SolverSettings.from_dict({**cfg, **time_cfg})
    return method, settings, DasslSettings.from_dict(dassl_cfg)


def build_problem_from_dict(config: JsonDict) -> DAEProblem:
    """
    Build a :class:`DAEProblem` from an in-memory JSON-like dictionary.

    Either ``equations`` (with ``parameters`` and ``initial_conditions``) or a
    Modelica-style ``model`` text must be given. ``time`` is required;
    ``solver`` and ``analysis`` are optional.

    This is the core entry point; ``load_from_json`` is a small wrapper around it.
    """
    time_cfg = _parse_time(config.get("time", {}))
    method, settings, dassl = _parse_solver(config.get("solver", {}), time_cfg)
    analysis_cfg = dict(config.get("analysis", {}))
    analysis_cfg.pop("enabled", None)
    analyzer = AnalyzerSettings.from_dict(analysis_cfg)

    if "model" in config:
        if "equations" in config:
            raise ValueError("Specify either 'model' or 'equations', not both.")
        model_text = config["model"]
        if isinstance(model_text, list):
            model_text = "\n".join(model_text)
        model = parse_model(model_text)
        return DAEProblem(
            system=model.compile(),
            ic=InitialConditions.from_values(model.initial_state()),
            settings=settings,
            method=method,
            dassl=dassl,
            analyzer=analyzer,
            name=config.get("name", model.name),
        )

    if "equations" not in config:
        raise ValueError("JSON configuration must contain 'equations' or 'model'.")
    if "initial_conditions" not in config:
        raise ValueError("JSON configuration must contain 'initial_conditions'.")

    parameters = _parse_parameters(config.get("parameters"))
    system = compile_equations(_parse_equations(config["equations"]), parameters)
    return DAEProblem(
        system=system,
        ic=_parse_initial_conditions(config["initial_conditions"]),
        settings=settings,
        method=method,
        dassl=dassl,
        analyzer=analyzer,
        name=config.get("name"),
    )


def analysis_enabled(config: JsonDict) -> bool:
    return bool(config.get("analysis", {}).get("enabled", False))


def load_config(path: Union[str, Path]) -> JsonDict:
    p = Path(path)
    with p.open("r", encoding="utf8") as f:
        return json.load(f)


def load_from_json(path: Union[str, Path]) -> DAEProblem:
    """
    Load a DAEProblem from a JSON file.

    Parameters
    ----------
    path:
        Path to the JSON configuration file.
    """
    return build_problem_from_dict(load_config(path))
