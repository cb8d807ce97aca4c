from .field import VectorField2D, ConvergenceStructures
from .classifier import Classifier, StructureHit, Termination, NO_LABEL
from .integrator import (
    IntegrationMethod,
    Direction,
    IntegrationConfig,
    ParticleBatch,
    StreamlineIntegrator,
    advect,
)
from .refinement import MeshRefiner
from .results import (
    ComputationState,
    PendingParticles,
    ComputationSnapshot,
    ResultChannel,
)
from .performance import PerformanceRecorder
from .computation import RunConfig, ComputationListener, TopologyComputation
from .api import (
    save_npz, load_npz, load_metadata, NpzResultWriter,
    linear_field, sink_field, uniform_field,
)
from .logging_config import setup_logging

__all__ = [
    "VectorField2D", "ConvergenceStructures",
    "Classifier", "StructureHit", "Termination", "NO_LABEL",
    "IntegrationMethod", "Direction", "IntegrationConfig", "ParticleBatch",
    "StreamlineIntegrator", "advect",
    "MeshRefiner",
    "ComputationState", "PendingParticles", "ComputationSnapshot", "ResultChannel",
    "PerformanceRecorder",
    "RunConfig", "ComputationListener", "TopologyComputation",
    "save_npz", "load_npz", "load_metadata", "NpzResultWriter",
    "linear_field", "sink_field", "uniform_field",
    "setup_logging",
]
