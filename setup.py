"""
Installs jsdmstan
"""

import re

from setuptools import find_packages, setup


# Get package information
def get_package_info():
    """
    Gets version information for the installation.
    """
    # Set up variables
    package_version = None

    # Open the file containing version info
    with open("jsdmstan/__init__.py", "r", encoding="utf-8") as file:
        for line in file:
            # Check version
            if match_obj := re.match(r"__version__.+([0-9]+\.[0-9]+\.[0-9]+)", line):
                package_version = match_obj.group(1)

    # Checks on variables
    if package_version is None:
        raise IOError("Could not find information on version.")

    return package_version


# Run setup
setup(
    name="jsdmstan",
    version=get_package_info(),
    description="Joint species distribution models fit with Stan",
    python_requires=">=3.10",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "arviz<1.0",
        "cmdstanpy",
        "dask",
        "formulaic",
        "h5netcdf",
        "holoviews",
        "hvplot",
        "numpy",
        "pandas",
        "panel",
        "scipy",
        "tqdm",
        "typeguard",
        "xarray",
    ],
    extras_require={"test": ["pytest"]},
    entry_points={
        "console_scripts": [
            "jsdmstan-simulate=jsdmstan.pipelines.simulate:main",
            "jsdmstan-fit=jsdmstan.pipelines.fit:main",
            "jsdmstan-run-delayed=jsdmstan.pipelines.run_delayed_fit:main",
        ]
    },
)
