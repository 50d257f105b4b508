import setuptools

with open("tracklib/.version") as f:
    version = f.read().strip()

setuptools.setup(
    name="tracklib",
    version=version,
    python_requires=">=3.11.0",
    license="Apache-2.0",
    entry_points={"console_scripts": ["tracklib = tracklib.__main__:main"]},
    packages=["tracklib"],
    package_data={"tracklib": [".version"]},
    install_requires=[
        "appdirs",
        "click",
        "tomli-w",
    ],
    extras_require={"test": ["pytest"]},
)
