"""Setup configuration for Practice Pipeline."""

from setuptools import setup

setup(
    name="practice_pipeline",
    version="1.0.0",
    description="Practice Lead Pipeline - Fault-Tolerant Healthcare Lead Automation",
    author="Mark Lerner",
    py_modules=["practice_pipeline", "content_classifier", "log_capture"],
    python_requires=">=3.9",
    install_requires=[],
    extras_require={
        "test": [
            "pytest>=7.4.3",
            "pytest-cov>=4.1.0",
            "pytest-mock>=3.12.0",
            "pytest-xdist>=3.5.0",
            "pytest-timeout>=2.2.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "practice-pipeline=practice_pipeline:main",
        ],
    },
)
