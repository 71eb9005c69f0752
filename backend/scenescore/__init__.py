"""SceneScore: scene-matched game music selection and generation."""

__version__ = "0.1.0"
