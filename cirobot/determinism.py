"""
CI Robot Determinism Profiles - editor flags for reproducible automation runs.

Profiles:
- robot: full determinism for CI automation and visual regression
- headless: no rendering, for non-visual automation tests
- visual-test: rendering on, fixed resolution, no AA / motion blur
- performance: uncapped frame rate for profiling
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from cirobot.log import get_logger

logger = get_logger(__name__)


@dataclass
class DeterminismProfile:
    name: str
    description: str
    editor_args: List[str] = field(default_factory=list)
    config_overrides: Dict[str, str] = field(default_factory=dict)


_QUIET_EDITOR = {
    "EditorPerProjectUserSettings.bShowProjectLauncherBanner": "False",
    "EditorPerProjectUserSettings.bShowImportantNotifications": "False",
}

ROBOT_MODE = DeterminismProfile(
    name="robot",
    description="Full determinism for CI automation and visual regression testing",
    editor_args=[
        "-FIXEDTIMESTEP", "-FPS=60", "-BENCHMARK", "-DETERMINISTIC",
        "-NOSPLASH", "-NOSOUND", "-NOTEXTURESTREAMING", "-Scalability=Epic",
        "-NoVerifyGC", "-NOVERIFYGC", "-UNATTENDED",
        "-ResX=1920", "-ResY=1080", "-WINDOWED", "-WinX=0", "-WinY=0",
    ],
    config_overrides={
        **_QUIET_EDITOR,
        "Engine.DeviceProfileManager.ActiveDeviceProfile": "Windows",
        "Engine.RandomSeed": "12345",
        "EditorPerProjectUserSettings.bAutoSaveEnabled": "False",
    },
)

HEADLESS_MODE = DeterminismProfile(
    name="headless",
    description="Headless mode for non-visual automation tests",
    editor_args=[
        "-NULLRHI", "-NOSPLASH", "-NOSOUND", "-UNATTENDED",
        "-NoVerifyGC", "-NOVERIFYGC", "-BENCHMARK", "-FIXEDTIMESTEP", "-FPS=60",
    ],
    config_overrides=dict(_QUIET_EDITOR),
)

VISUAL_TEST_MODE = DeterminismProfile(
    name="visual-test",
    description="Visual testing mode with rendering enabled for screenshot comparison",
    editor_args=[
        "-FIXEDTIMESTEP", "-FPS=60", "-BENCHMARK", "-DETERMINISTIC",
        "-NOSPLASH", "-NOSOUND", "-NOTEXTURESTREAMING", "-Scalability=Epic",
        "-NoVerifyGC", "-NOVERIFYGC", "-UNATTENDED",
        "-ResX=1920", "-ResY=1080", "-WINDOWED", "-FORCERES",
        "-dx12", "-NoAntiAliasing", "-NoMotionBlur",
    ],
    config_overrides={
        **_QUIET_EDITOR,
        "Engine.DeviceProfileManager.ActiveDeviceProfile": "Windows",
        "Engine.RandomSeed": "12345",
        "Engine.AutoExposure.bEnabled": "False",
        "Engine.AutoExposure.Exposure": "1.0",
    },
)

PERFORMANCE_TEST_MODE = DeterminismProfile(
    name="performance",
    description="Performance testing mode without frame rate caps",
    editor_args=[
        "-NOSPLASH", "-NOSOUND", "-UNATTENDED", "-Scalability=Epic",
        "-ResX=1920", "-ResY=1080", "-WINDOWED", "-BENCHMARK", "-NOVSYNC", "-USEALLCORES",
    ],
    config_overrides={
        "Engine.bSmoothFrameRate": "False",
        "Engine.MaxFPS": "0",
    },
)

PROFILES: Dict[str, DeterminismProfile] = {
    p.name: p for p in (ROBOT_MODE, HEADLESS_MODE, VISUAL_TEST_MODE, PERFORMANCE_TEST_MODE)
}

# Flags where a later value replaces an earlier one
_CONFLICT_PREFIXES = ("-ResX=", "-ResY=", "-FPS=")


class DeterminismManager:
    """Tracks the active profile and produces editor args"""

    def __init__(self, project_path: str = ""):
        self.project_path = project_path
        self.current_profile: Optional[DeterminismProfile] = None
        self.applied_overrides: Dict[str, str] = {}

    def get_profile(self, name: str) -> Optional[DeterminismProfile]:
        return PROFILES.get(name)

    def apply_profile(self, profile: Union[DeterminismProfile, str]) -> List[str]:
        """Activate a profile and return a copy of its editor args.

        Raises:
            ValueError: unknown profile name
        """
        if isinstance(profile, str):
            resolved = self.get_profile(profile)
            if resolved is None:
                raise ValueError(f"Unknown determinism profile: {profile}")
            profile = resolved

        self.current_profile = profile
        self.applied_overrides = dict(profile.config_overrides)
        for key, value in profile.config_overrides.items():
            logger.debug("[DETERMINISM] Config: %s = %s", key, value)

        logger.info("[DETERMINISM] Applied profile: %s (%d flags)", profile.name, len(profile.editor_args))
        return list(profile.editor_args)

    def merge_args(self, profile: Union[DeterminismProfile, str], additional_args: List[str]) -> List[str]:
        """Profile args followed by extra args, deduplicated; later -ResX/-ResY/-FPS win."""
        if isinstance(profile, str):
            base = PROFILES[profile].editor_args if profile in PROFILES else []
        else:
            base = profile.editor_args

        merged: List[str] = []
        for arg in list(base) + list(additional_args):
            for prefix in _CONFLICT_PREFIXES:
                if arg.startswith(prefix):
                    merged = [a for a in merged if not a.startswith(prefix)]
            if arg not in merged:
                merged.append(arg)
        return merged
