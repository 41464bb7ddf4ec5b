"""The cardiac problem: builds the tissue, then drives solver, checkpoint and hooks through time.

One ``solve()`` walks the time stepper from the current time to the end of the
simulation.  Each interval is solved collectively; the new solution replaces
the previous one, which is released unless it is the same vector.  On failure
every process runs the same unwind (release the solver and any initial
condition the problem does not own, close files, post-process) and the
original error is raised again.
"""
from __future__ import annotations

import logging
import warnings
from pathlib import Path
from typing import Sequence

import numpy as np

from .boundary import BoundaryConditionsContainer
from .cells import AbstractCardiacCellFactory
from .checkpoint import CheckpointReader, CheckpointWriter, checkpoint_path
from .errors import ConfigurationError, SolverFailure
from .events import Event, EventTimer
from .mesh import Mesh
from .models import TIME_STEP_TOLERANCE, ProblemConfig, ProblemState, divides, split_output_variable
from .output_modifiers import AbstractOutputModifier
from .parallel import ProcessGroup
from .paths import output_root, resolve_output_dir
from .postprocessing import PostProcessingDispatcher
from .progress import ProgressReporter
from .solver import AbstractCardiacSolver, TimeAdaptivityController
from .storage import load_problem_state, save_problem_state
from .time_stepper import TimeStepper
from .tissue import CardiacTissue
from .variants import ProblemVariant
from .vectors import FieldVector


logger = logging.getLogger(__name__)


class CardiacProblem:
    """Couples a cell factory, a problem variant and a configuration into one simulation."""

    def __init__(
        self,
        cell_factory: AbstractCardiacCellFactory | None,
        variant: ProblemVariant,
        config: ProblemConfig,
        group: ProcessGroup | None = None,
    ) -> None:
        if cell_factory is None:
            raise ConfigurationError("Please supply a cell factory to the cardiac problem constructor.")
        self.cell_factory = cell_factory
        self.variant = variant
        self.config = config
        self.events = EventTimer()
        self.state = ProblemState.UNINITIALISED

        self._group = group
        self._mesh: Mesh | None = None
        self._tissue: CardiacTissue | None = None
        self._solver: AbstractCardiacSolver | None = None
        self._solution: FieldVector | None = None
        self._writer: CheckpointWriter | None = None
        self._progress: ProgressReporter | None = None
        self._current_time = 0.0

        self._print_output = True
        self._write_info = False
        self._output_nodes: tuple[int, ...] = ()
        self._use_writer_cache = False
        self._writer_chunk_rows = 0
        self._bcc: BoundaryConditionsContainer | None = None
        self._default_bcc: BoundaryConditionsContainer | None = None
        self._controller: TimeAdaptivityController | None = None
        self._output_modifiers: list[AbstractOutputModifier] = []

        self._primary_columns: list[int] = []
        self._extra_columns: list[tuple[int, str, int]] = []
        self._use_original_ordering = False

    # -- setup -----------------------------------------------------------
    @property
    def shape(self):
        return self.variant.shape

    @property
    def group(self) -> ProcessGroup:
        if self._group is not None:
            return self._group
        if self._mesh is not None:
            return self._mesh.group
        raise ConfigurationError("The problem has no mesh yet, so it has no process group.")

    def set_mesh(self, mesh: Mesh) -> None:
        if self._mesh is not None:
            raise ConfigurationError("The mesh has already been set.")
        if mesh is None:
            raise ConfigurationError("Cannot set a missing mesh.")
        self._mesh = mesh

    def print_output(self, flag: bool) -> None:
        self._print_output = bool(flag)

    def set_write_info(self, flag: bool = True) -> None:
        self._write_info = bool(flag)

    def set_output_nodes(self, nodes: Sequence[int]) -> None:
        self._output_nodes = tuple(sorted({int(n) for n in nodes}))

    def set_use_hdf5_data_writer_cache(self, flag: bool = True) -> None:
        self._use_writer_cache = bool(flag)

    def set_hdf5_data_writer_target_chunk_size(self, rows: int) -> None:
        if rows < 0:
            raise ValueError("Chunk size must be non-negative.")
        self._writer_chunk_rows = int(rows)

    def set_boundary_conditions_container(self, bcc: BoundaryConditionsContainer) -> None:
        self._bcc = bcc

    def get_boundary_conditions_container(self) -> BoundaryConditionsContainer | None:
        return self._bcc

    def set_use_time_adaptivity_controller(
        self,
        use_adaptivity: bool,
        controller: TimeAdaptivityController | None = None,
    ) -> None:
        if use_adaptivity:
            if controller is None:
                raise ValueError("A time adaptivity controller is required when adaptivity is switched on.")
            self._controller = controller
        else:
            self._controller = None

    def add_output_modifier(self, modifier: AbstractOutputModifier) -> None:
        self._output_modifiers.append(modifier)

    # -- accessors -------------------------------------------------------
    @property
    def solver(self) -> AbstractCardiacSolver | None:
        return self._solver

    def get_solution(self) -> FieldVector | None:
        return self._solution

    def get_current_time(self) -> float:
        return self._current_time

    def get_mesh(self) -> Mesh:
        if self._mesh is None:
            raise ConfigurationError("No mesh has been set or created yet.")
        return self._mesh

    def get_tissue(self) -> CardiacTissue:
        if self._tissue is None:
            raise ConfigurationError("Tissue not yet set up, you may need to call initialise() before get_tissue().")
        return self._tissue

    def get_data_reader(self) -> CheckpointReader:
        if not self.config.output_requested:
            raise ConfigurationError("Data reader invalid as data writer cannot be initialised.")
        return CheckpointReader(self.config.output_directory, self.config.output_filename_prefix)

    # -- initialisation --------------------------------------------------
    def _create_mesh_from_config(self) -> Mesh:
        config = self.config
        try:
            if config.load_mesh:
                return Mesh.from_file(config.mesh_file, group=self._group)
            if config.create_mesh:
                slab = config.slab_mesh
                return Mesh.construct_regular_slab_mesh(slab.inter_node_space, *slab.dimensions, group=self._group)
            raise ConfigurationError("Neither a mesh file nor slab dimensions were configured.")
        except ConfigurationError as exc:
            raise ConfigurationError(
                f"No mesh given: define it in the configuration or call set_mesh().\n{exc}"
            ) from exc

    def initialise(self) -> None:
        """Build or adopt the mesh, create the tissue and reset the clock to zero."""
        with self.events.timed(Event.READ_MESH):
            if self._mesh is not None:
                if self.group.is_parallel and not self._mesh.is_distributed:
                    warnings.warn("Using a non-distributed mesh in a parallel simulation is not a good idea.")
            else:
                self._mesh = self._create_mesh_from_config()
            self.cell_factory.set_mesh(self._mesh)

        with self.events.timed(Event.INITIALISE):
            if self.config.transmural_heterogeneities:
                self.cell_factory.fill_in_cellular_transmural_areas()
            self._tissue = self.variant.create_tissue(self.cell_factory, self._mesh, self.config)

        if self._solution is not None:
            with self.events.timed(Event.COMMUNICATION):
                self._solution.release()
                self._solution = None

        self._current_time = 0.0
        self.variant.set_electrodes(self._mesh)
        self.state = ProblemState.INITIALISED
        logger.info(
            "Initialised %s problem on %d nodes", type(self.variant).__name__, self._mesh.num_nodes
        )

    def pre_solve_checks(self) -> None:
        if self._tissue is None:
            raise ConfigurationError("Cardiac tissue is missing, initialise() probably hasn't been called.")
        end_time = self.config.simulation_duration
        if end_time <= self._current_time:
            raise ConfigurationError("End time should be in the future.")
        if self._print_output and not self.config.output_requested:
            raise ConfigurationError(
                "Either explicitly specify not to print output (call print_output(False)) "
                "or specify the output directory and filename prefix."
            )
        pde_dt = self.config.pde_time_step
        if not divides(pde_dt, end_time, TIME_STEP_TOLERANCE) or not divides(
            pde_dt, end_time - self._current_time, TIME_STEP_TOLERANCE
        ):
            raise ConfigurationError("PDE timestep does not seem to divide end time - check parameters.")

    def create_initial_condition(self) -> FieldVector:
        tissue = self.get_tissue()
        factory = self.get_mesh().get_distributed_vector_factory()
        initial_condition = factory.create_vec(self.shape.problem_dim)
        voltage = initial_condition.stripe(0)
        for k, node in enumerate(factory.owned()):
            voltage[k] = tissue.get_cardiac_cell(node).get_voltage()
        # Any further stacked unknowns start at zero.
        return initial_condition

    # -- writer ----------------------------------------------------------
    def _define_writer_columns(self, writer: CheckpointWriter, extending: bool) -> None:
        mesh = self.get_mesh()
        if not extending:
            writer.define_fixed_dimension(mesh.num_nodes, self._output_nodes or None)
            self._primary_columns = [
                writer.define_variable(name, unit) for name, unit in zip(self.shape.unknowns, self.shape.units)
            ]
            estimate = TimeStepper(
                self._current_time, self.config.simulation_duration, self.config.printing_time_step
            ).estimate_time_steps()
            writer.define_unlimited_dimension("Time", "msecs", estimate + 1)
        else:
            self._primary_columns = [writer.get_variable_by_name(name) for name in self.shape.unknowns]

    def _define_extra_variable_columns(self, writer: CheckpointWriter, extending: bool) -> None:
        self._extra_columns = []
        for full_name in self.config.output_variables:
            base, cell_index = split_output_variable(full_name)
            if extending:
                column = writer.get_variable_by_name(full_name)
            else:
                column = writer.define_variable(full_name, "unknown_units")
            self._extra_columns.append((column, base, cell_index))

    def _initialise_writer(self) -> bool:
        """Open the checkpoint; returns True when an existing file is being extended."""
        directory = self.config.output_directory
        prefix = self.config.output_filename_prefix
        extend_file = self._solution is not None
        if extend_file:
            self.group.barrier("InitialiseWriter::Extension check")
            exists = checkpoint_path(directory, prefix).exists() if self.group.is_master else None
            extend_file = bool(self.group.bcast(exists))
            self.group.barrier("InitialiseWriter::Extension check")

        factory = self.get_mesh().get_distributed_vector_factory()
        writer = CheckpointWriter(
            factory,
            directory,
            prefix,
            extend=extend_file,
            use_cache=self._use_writer_cache,
            group=self.group,
            resume_time=self._current_time if extend_file else None,
        )
        self._writer = writer
        if not extend_file and self._writer_chunk_rows:
            writer.set_target_chunk_size(self._writer_chunk_rows)
        self._define_writer_columns(writer, extend_file)
        self._define_extra_variable_columns(writer, extend_file)

        self._use_original_ordering = self.config.output_using_original_node_ordering
        if self._use_original_ordering:
            applied = writer.apply_permutation(self.get_mesh().node_permutation, unsafe_extend=True)
            # Not really a permutation: write in internal ordering for this run.
            if not applied:
                self._use_original_ordering = False
        if not extend_file:
            writer.end_define_mode()
        return extend_file

    def _extra_variable_values(self, cell_index: int, name: str) -> np.ndarray:
        mesh = self.get_mesh()
        tissue = self.get_tissue()
        factory = mesh.get_distributed_vector_factory()
        values = np.zeros(factory.local_size, dtype=float)
        for k, node in enumerate(factory.owned()):
            if mesh.is_node_in_bath(node, self.config.bath_identifiers):
                continue
            values[k] = tissue.get_cell(node, cell_index).get_any_variable(name, self._current_time)
        return values

    def write_one_step(self, time: float, solution: FieldVector) -> None:
        columns: dict[int, np.ndarray] = {
            column: solution.stripe(k) for k, column in enumerate(self._primary_columns)
        }
        for column, name, cell_index in self._extra_columns:
            columns[column] = self._extra_variable_values(cell_index, name)
        self._writer.write_row(time, columns)

    def write_info(self, time: float) -> None:
        values = self._solution.global_values().reshape(-1, self.shape.problem_dim)
        logger.info("Solved to time %g", time)
        for k, name in enumerate(self.shape.unknowns):
            logger.info(" %s: min %g max %g", name, values[:, k].min(), values[:, k].max())

    # -- solve -----------------------------------------------------------
    def _release_solver(self) -> None:
        self._solver = None

    def _resolve_boundary_conditions(self) -> BoundaryConditionsContainer:
        if self._bcc is None:
            self._default_bcc = BoundaryConditionsContainer.zero_neumann(self.get_mesh(), self.shape.problem_dim)
            self._bcc = self._default_bcc
        return self._bcc

    def _close_progress(self, completed: bool) -> None:
        if self._progress is not None:
            self._progress.close(completed=completed)
            self._progress = None

    def _unwind(self, initial_condition: FieldVector | None) -> None:
        self._release_solver()
        if initial_condition is not None and initial_condition is not self._solution:
            initial_condition.release()
        self.events.reset()
        self._close_progress(completed=False)
        self.state = ProblemState.FAILED

    def solve(self, config: ProblemConfig | None = None) -> None:
        """Advance from the current time to the end time, writing every printing step."""
        if config is not None:
            self.config = config
        self.pre_solve_checks()
        if not self.events.is_running(Event.EVERYTHING):
            self.events.begin_event(Event.EVERYTHING)

        stepper = TimeStepper(
            self._current_time,
            self.config.simulation_duration,
            self.config.printing_time_step,
            False,
            self.variant.set_up_additional_stopping_times(),
        )
        bcc = self._resolve_boundary_conditions()
        self._solver = self.variant.create_solver(self._tissue, bcc, self.config)
        resuming = self._solution is not None
        initial_condition = self._solution if resuming else self.create_initial_condition()
        self.state = ProblemState.SOLVING
        factory = self.get_mesh().get_distributed_vector_factory()

        if self._print_output:
            try:
                with self.events.timed(Event.WRITE_OUTPUT):
                    extending = self._initialise_writer()
                    # A resumed run's first row is already the last row of the file.
                    if not (resuming and extending):
                        self.write_one_step(stepper.get_time(), initial_condition)
            except Exception:
                if self._writer is not None:
                    writer, self._writer = self._writer, None
                    writer.close()
                self._unwind(initial_condition)
                raise
            progress_dir = resolve_output_dir(self.config.output_directory)
        else:
            progress_dir = output_root()

        try:
            for modifier in self._output_modifiers:
                modifier.initialise_at_start(factory)
                modifier.process_solution_at_timestep(stepper.get_time(), initial_condition, self.shape.problem_dim)

            self._progress = ProgressReporter(
                progress_dir, self._current_time, self.config.simulation_duration, self.group
            )
            self._progress.update(self._current_time)

            self._solver.set_time_step(self.config.pde_time_step)
            if self._controller is not None:
                self._solver.set_time_adaptivity_controller(self._controller)

            while not stepper.is_time_at_end():
                self._solver.set_times(stepper.get_time(), stepper.get_next_time())
                self._solver.set_initial_condition(initial_condition)
                self.variant.at_beginning_of_timestep(self, stepper.get_time())

                error: Exception | None = None
                new_solution: FieldVector | None = None
                with self.events.timed(Event.SOLVE):
                    try:
                        new_solution = self._solver.solve()
                    except Exception as exc:
                        error = exc
                    self.group.replicate_failure(error, SolverFailure)

                previous = initial_condition
                self._solution = new_solution
                initial_condition = new_solution
                if previous is not new_solution:
                    with self.events.timed(Event.COMMUNICATION):
                        previous.release()

                stepper.advance_one_time_step()
                self._current_time = stepper.get_time()

                if self._write_info:
                    with self.events.timed(Event.WRITE_OUTPUT):
                        self.write_info(self._current_time)
                for modifier in self._output_modifiers:
                    modifier.process_solution_at_timestep(self._current_time, self._solution, self.shape.problem_dim)
                if self._print_output:
                    with self.events.timed(Event.WRITE_OUTPUT):
                        self.write_one_step(self._current_time, self._solution)

                self._progress.update(self._current_time)
                self.variant.on_end_of_timestep(self, self._current_time)
        except Exception:
            self._unwind(initial_condition)
            try:
                self.close_files_and_post_process()
            except Exception:
                logger.exception("Cleanup after a failed solve raised as well")
            raise

        self._release_solver()
        self._progress.print_finalising_message()
        completed = False
        try:
            for modifier in self._output_modifiers:
                modifier.finalise_at_end()
            self.close_files_and_post_process()
            completed = True
        except Exception:
            self.events.reset()
            self.state = ProblemState.FAILED
            raise
        finally:
            self._close_progress(completed=completed)
        self.events.end_event(Event.EVERYTHING)
        self.state = ProblemState.COMPLETED
        logger.info("Solve finished at time %g", self._current_time)

    def close_files_and_post_process(self) -> None:
        """Close the checkpoint, then run the requested converters and post-processing maps."""
        if not self._print_output:
            return
        with self.events.timed(Event.WRITE_OUTPUT):
            if self._writer is not None:
                writer, self._writer = self._writer, None
                writer.close()

        dispatcher = PostProcessingDispatcher(
            self.get_mesh(),
            self.config,
            self.config.output_directory,
            self.config.output_filename_prefix,
            has_bath=self.variant.has_bath,
            output_subset=bool(self._output_nodes),
            use_original_ordering=self._use_original_ordering,
            group=self.group,
        )
        with self.events.timed(Event.POST_PROC):
            dispatcher.post_process()
        with self.events.timed(Event.DATA_CONVERSION):
            dispatcher.convert()

    # -- archiving -------------------------------------------------------
    def save_state(self, path: str | Path) -> Path | None:
        """Archive time, solution and cell states; written by rank 0, collective."""
        if self._solution is None:
            raise ConfigurationError("There is no solution to archive; call solve() first.")
        factory = self.get_mesh().get_distributed_vector_factory()
        solution = factory.gather(self._solution)
        gathered = self.group.gather(self.get_tissue().get_cell_states())
        written = None
        if self.group.is_master:
            states = [state for block in gathered for state in block]
            written = save_problem_state(path, self._current_time, solution, self.shape.problem_dim, states)
        self.group.barrier("CardiacProblem::save_state")
        return written

    def load_state(self, path: str | Path) -> None:
        """Restore time, solution and cell states from a ``save_state`` archive."""
        tissue = self.get_tissue()
        archive = load_problem_state(path)
        if archive["problem_dim"] != self.shape.problem_dim:
            raise ConfigurationError(
                f"Archived state has {archive['problem_dim']} unknowns per node; this problem has "
                f"{self.shape.problem_dim}."
            )
        factory = self.get_mesh().get_distributed_vector_factory()
        if len(archive["cell_states"]) != factory.problem_size:
            raise ConfigurationError("Archived state was saved on a mesh with a different number of nodes.")
        solution = factory.from_global(archive["solution"], self.shape.problem_dim)
        tissue.set_cell_states(archive["cell_states"][factory.low : factory.high])
        if self._solution is not None:
            self._solution.release()
        self._solution = solution
        self._current_time = archive["time"]
        logger.info("Loaded problem state at time %g from %s", self._current_time, path)

    def close(self) -> None:
        if self._solution is not None:
            self._solution.release()
            self._solution = None
