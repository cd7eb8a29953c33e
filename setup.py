import setuptools

setuptools.setup(
    name="node-repository",
    version="0.1.0",
    description="Allocates cluster nodes to applications and maintains their lifecycle",
    python_requires=">=3.10,<3.13",
    packages=setuptools.find_packages(exclude=("tests*",)),
    install_requires=[
        "pydantic>2.0",
        "isodate",
    ],
    extras_require={
        "test": ["pytest", "hypothesis"],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "License :: OSI Approved :: Apache Software License",
        "Operating System :: OS Independent",
    ],
    include_package_data=True,
    package_data={
        "": [
            "flavors/profiles/*.json",
        ]
    },
)
