"""
Utilities Package.

Challenge detection and mitigation, human-like interaction simulation,
solving-service clients and progress reporting.
"""

from .challenge_handler import (
    ChallengeDetector,
    DetectionMarkers,
    get_challenge_instructions,
)

from .human_simulator import (
    HumanSimulator,
    HumanSimulatorConfig,
    create_human_simulator,
)

# External solving services (optional)
from .captcha_solver import (
    BaseCaptchaSolver,
    TwoCaptchaSolver,
    CapSolverSolver,
    MockCaptchaSolver,
    CaptchaType,
    SolverStatus,
    SolveResult,
    get_solver,
    create_solver_from_settings,
)

from .mitigation import ChallengeMitigator, MitigationStats
from .progress_reporter import ProgressReporter

__all__ = [
    "ChallengeDetector",
    "DetectionMarkers",
    "get_challenge_instructions",
    "HumanSimulator",
    "HumanSimulatorConfig",
    "create_human_simulator",
    "BaseCaptchaSolver",
    "TwoCaptchaSolver",
    "CapSolverSolver",
    "MockCaptchaSolver",
    "CaptchaType",
    "SolverStatus",
    "SolveResult",
    "get_solver",
    "create_solver_from_settings",
    "ChallengeMitigator",
    "MitigationStats",
    "ProgressReporter",
]
