"""SkillForge Watch Together: synchronized group video watching."""

__version__ = "0.1.0"
