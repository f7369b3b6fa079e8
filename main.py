"""
Nonlocal FEM - Hydra entry point.

Usage:
    python main.py
    python main.py problem=elasticity model.p1=0.5 model.radius=0.15
    python main.py mesh.source=file mesh.path=meshes/plate.su2 threads=8
    python main.py time.enabled=true time.steps=200 mlflow.enabled=true
"""

import logging
import os
import sys
import tempfile
from pathlib import Path

import hydra
import mlflow
import numba
from hydra.core.hydra_config import HydraConfig
from hydra.utils import instantiate
from omegaconf import DictConfig, OmegaConf

sys.path.insert(0, str(Path(__file__).parent / "src"))

from nonlocalfem import (  # noqa: E402
    AssemblyConfig,
    BoundaryCondition,
    ElasticitySolver,
    ElasticParameters,
    HeatParameters,
    HeatSolver,
    Mesh,
    NonlocalFEMError,
    TimeParameters,
    line_mesh,
    rectangle_mesh,
)
from nonlocalfem.errors import ConfigurationError  # noqa: E402

log = logging.getLogger(__name__)


def build_mesh(cfg: DictConfig) -> Mesh:
    """Generated line/rectangle mesh or any file meshio reads."""
    source = cfg.mesh.source
    if source == "line":
        return line_mesh(cfg.mesh.length, cfg.mesh.elements, order=cfg.mesh.order)
    if source == "rectangle":
        return rectangle_mesh(
            cfg.mesh.size[0], cfg.mesh.size[1], cfg.mesh.cells[0], cfg.mesh.cells[1], cfg.mesh.element
        )
    if source == "file":
        return Mesh.from_meshio(Path(hydra.utils.to_absolute_path(cfg.mesh.path)))
    raise ConfigurationError(f"Unknown mesh.source={source!r}. Use line, rectangle or file.")


def build_boundaries(groups: DictConfig, components: int) -> dict:
    """{group: {kind, value}} for heat, {group: [{kind, value}, {kind, value}]} for elasticity."""
    conditions = {}
    for name, spec in groups.items():
        specs = [spec] if components == 1 else list(spec)
        parsed = tuple(BoundaryCondition(s.kind, float(s.value)) for s in specs)
        conditions[str(name)] = parsed[0] if components == 1 else parsed
    return conditions


def setup_mlflow(cfg: DictConfig) -> str:
    """Setup MLflow tracking and return experiment name."""
    tracking_uri = cfg.mlflow.get("tracking_uri", "./mlruns")
    os.environ["MLFLOW_TRACKING_URI"] = str(tracking_uri)
    mlflow.set_tracking_uri(tracking_uri)
    mlflow.set_experiment(cfg.experiment_name)
    return cfg.experiment_name


def run(cfg: DictConfig, output_dir: Path):
    """Solve the configured problem and write its outputs. Returns (solver, solution)."""
    mesh = build_mesh(cfg)
    config = AssemblyConfig(**cfg.assembly)
    influence = None
    if config.is_nonlocal(cfg.model.p1):
        influence = instantiate(cfg.influence, dimension=mesh.dimension)

    if cfg.problem == "heat":
        params = HeatParameters(
            **cfg.model.heat,
            p1=cfg.model.p1,
            radius=cfg.model.radius,
            neighbour_radius=cfg.model.neighbour_radius,
        )
        solver = HeatSolver(mesh, params, influence, config)
        boundaries = build_boundaries(cfg.boundaries.heat, 1)
        if cfg.time.enabled:
            time_params = TimeParameters(
                time_interval=tuple(cfg.time.interval),
                steps=cfg.time.steps,
                save_freq=cfg.time.save_freq,
                save_path=str(output_dir / "csv") if cfg.output.csv else None,
                save_csv=cfg.output.csv,
                calc_energy=cfg.time.calc_energy,
            )
            solution = solver.nonstationary(boundaries, cfg.time.initial, time_params)
        else:
            solution = solver.stationary(boundaries)
            if cfg.output.csv:
                solution.save_as_csv(output_dir / "T.csv")
    elif cfg.problem == "elasticity":
        params = ElasticParameters(
            **cfg.model.elasticity,
            p1=cfg.model.p1,
            radius=cfg.model.radius,
            neighbour_radius=cfg.model.neighbour_radius,
        )
        solver = ElasticitySolver(mesh, params, influence, config)
        solution = solver.stationary(build_boundaries(cfg.boundaries.elasticity, 2))
        if cfg.output.csv:
            solution.save_as_csv(output_dir / "csv")
    else:
        raise ConfigurationError(f"Unknown problem={cfg.problem!r}. Use heat or elasticity.")

    if cfg.output.vtk:
        solution.save_as_vtk(output_dir / f"{cfg.problem}.vtk")
    return solver, solution


@hydra.main(config_path="conf", config_name="config", version_base=None)
def main(cfg: DictConfig) -> None:
    """Main entry point."""
    if cfg.threads:
        numba.set_num_threads(cfg.threads)
    output_dir = Path(HydraConfig.get().runtime.output_dir)
    log.info(f"Problem: {cfg.problem}, mesh: {cfg.mesh.source}, p1={cfg.model.p1}, r={cfg.model.radius}")

    try:
        if not cfg.mlflow.enabled:
            run(cfg, output_dir)
            return
        log.info(f"MLflow experiment: {setup_mlflow(cfg)}")
        with mlflow.start_run(run_name=f"{cfg.problem}_p1={cfg.model.p1}"):
            mlflow.log_dict(OmegaConf.to_container(cfg), "config.yaml")
            mlflow.log_params({"problem": cfg.problem, "p1": cfg.model.p1, "radius": cfg.model.radius})
            solver, solution = run(cfg, output_dir)
            mlflow.log_metrics(solver.metrics.to_mlflow())
            series = getattr(solution, "time_series", None)
            if series is not None and series.step:
                mlflow.tracking.MlflowClient().log_batch(
                    mlflow.active_run().info.run_id, metrics=series.to_mlflow_batch()
                )
            with tempfile.TemporaryDirectory() as tmpdir:
                vtu_path = Path(tmpdir) / "solution.vtu"
                solution.to_vtk().save(str(vtu_path))
                mlflow.log_artifact(str(vtu_path))
    except NonlocalFEMError as exc:
        log.error(f"{type(exc).__name__}: {exc}")
        sys.exit(1)


if __name__ == "__main__":
    main()
