"""
Steady heat conduction in a two-material L-shaped body.

Aluminum and copper parts heated by a constant volumetric source with the
whole boundary held at a fixed temperature:

    -div(lambda grad u) = f,   u = FIXED_BDY_TEMP on the boundary.

Usage:
    uv run python main.py
    uv run python main.py p_init=3 solver.method=cg assembly.num_threads=4
    uv run python main.py output.vtk=true mlflow.enabled=true
"""

import logging
import os
import sys
from pathlib import Path

import hydra
import mlflow
from dotenv import load_dotenv
from hydra.utils import instantiate
from omegaconf import DictConfig, OmegaConf

load_dotenv()
sys.path.insert(0, str(Path(__file__).parent / "src"))

from hpfem import (  # noqa: E402
    ALUMINUM,
    COPPER,
    ConstantEssentialBC,
    EssentialBCs,
    H1Space,
    LinearSolver,
    Mesh,
    SolverError,
    WeakFormPoisson,
    l_shape_mesh,
    load_mesh,
    vector_to_solution,
)

log = logging.getLogger(__name__)


def setup_mlflow(cfg: DictConfig) -> str:
    """Setup MLflow tracking and return experiment name."""
    tracking_uri = cfg.mlflow.get("tracking_uri", "./mlruns")
    os.environ["MLFLOW_TRACKING_URI"] = str(tracking_uri)
    mlflow.set_tracking_uri(tracking_uri)
    mlflow.set_experiment(cfg.experiment_name)
    return cfg.experiment_name


def build_space(cfg: DictConfig) -> H1Space:
    """Mesh, refinements, space, then a clone with cycling element orders."""
    mesh = load_mesh(cfg.mesh_file) if cfg.mesh_file else l_shape_mesh()
    mesh.refine([ALUMINUM, COPPER], cfg.init_ref_num)
    if cfg.refine_aluminum:
        mesh.refine_single(ALUMINUM)

    bcs = EssentialBCs(ConstantEssentialBC(list(cfg.bc_markers), cfg.fixed_bdy_temp))
    space = H1Space(mesh, bcs, cfg.p_init)

    # The clone owns its mesh and numbering; the original can be dropped
    new_space = H1Space()
    new_space.copy(space, Mesh())
    del space, mesh

    if cfg.vary_orders:
        for i, el in enumerate(new_space.mesh.active_elements(), start=1):
            new_space.set_element_order(el.id, i % 4 + 1)

    log.info(
        f"DOFs: {new_space.get_num_dofs()} (vertex {new_space.get_vertex_functions_count()}, "
        f"edge {new_space.get_edge_functions_count()}, "
        f"bubble {new_space.get_bubble_functions_count()})"
    )
    return new_space


def postprocess(cfg: DictConfig, space: H1Space, sln, output_dir: Path) -> None:
    from hpfem.views import (
        Linearizer,
        OrderView,
        Orderizer,
        ScalarView,
        plot_orders,
        plot_solution,
        save_figure,
        setup_style,
    )

    if cfg.output.vtk:
        Linearizer.save_solution_vtk(sln, output_dir / "sln.vtk", "Temperature", cfg.output.subdivisions)
        Orderizer.save_mesh_vtk(space, output_dir / "mesh.vtk")
        Orderizer.save_orders_vtk(space, output_dir / "ord.vtk")

    if cfg.output.figures:
        setup_style()
        fig, _ = plot_solution(sln, subdivisions=cfg.output.subdivisions)
        save_figure(fig, output_dir / "figures" / "temperature.pdf")
        fig, _ = plot_orders(space)
        save_figure(fig, output_dir / "figures" / "orders.pdf")

    if cfg.output.visualization:
        orders = OrderView("Polynomial orders")
        orders.show(space)
        orders.wait_for_close()
        view = ScalarView("Solution", window_size=(1000, 800))
        view.show(sln, subdivisions=cfg.output.subdivisions)
        view.wait_for_close()


def run(cfg: DictConfig, output_dir: Path) -> LinearSolver:
    space = build_space(cfg)
    wf = WeakFormPoisson(
        {ALUMINUM: cfg.lambda_al, COPPER: cfg.lambda_cu}, source=cfg.volume_heat_src
    )
    solver = LinearSolver(
        wf,
        space,
        params=instantiate(cfg.solver),
        assembly_params=instantiate(cfg.assembly),
    )

    try:
        solver.solve()
    except SolverError as exc:
        log.error(f"Solve failed: {exc} {exc.diagnostic}")
        return solver

    sln = vector_to_solution(solver.get_sln_vector(), space)
    t_min, t_max = sln.min_max(cfg.output.subdivisions)
    log.info(f"Temperature range: [{t_min:.4f}, {t_max:.4f}]")
    postprocess(cfg, space, sln, output_dir)
    return solver


@hydra.main(config_path="conf", config_name="config", version_base=None)
def main(cfg: DictConfig) -> None:
    output_dir = Path(hydra.core.hydra_config.HydraConfig.get().runtime.output_dir)
    log.info(f"p_init={cfg.p_init}, init_ref_num={cfg.init_ref_num}, solver={cfg.solver.method}")

    if not cfg.mlflow.enabled:
        run(cfg, output_dir)
        return

    log.info(f"MLflow experiment: {setup_mlflow(cfg)}")
    with mlflow.start_run(run_name=f"p{cfg.p_init}_ref{cfg.init_ref_num}"):
        mlflow.log_dict(OmegaConf.to_container(cfg), "config.yaml")
        solver = run(cfg, output_dir)
        mlflow.log_params(solver.params.to_mlflow())
        mlflow.log_params(solver.assembly_params.to_mlflow())
        mlflow.log_metrics(solver.metrics.to_mlflow())


if __name__ == "__main__":
    main()
