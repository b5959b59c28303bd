from setuptools import setup, find_packages

LONG_DESC = open("README.rst").read()

setup(
    name="kvwatch",
    version="0.1.0",
    description="A reconnecting watch client for key-value stores",
    long_description=LONG_DESC,
    author="The kvwatch developers",
    license="MIT -or- Apache License 2.0",
    packages=find_packages(exclude=["tests"]),
    package_data={"kvwatch": ["_config.yaml"]},
    install_requires=[
        "asyncclick > 7.99",
        "trio >= 0.18",
        "anyio[trio] >= 4",
        "attrs >= 19",
        "outcome",
        "msgpack >= 1.0",
        "ruyaml >= 0.89",
    ],
    extras_require={"test": ["pytest", "pytest-trio >= 0.8"]},
    tests_require=["pytest", "pytest-trio >= 0.8"],
    keywords=["async", "key-values", "watch"],
    python_requires=">=3.8",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "License :: OSI Approved :: Apache Software License",
        "Framework :: AnyIO",
        "Framework :: Trio",
        "Operating System :: POSIX :: Linux",
        "Operating System :: MacOS :: MacOS X",
        "Operating System :: Microsoft :: Windows",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: Implementation :: CPython",
        "Topic :: Database",
        "Topic :: System :: Distributed Computing",
    ],
    entry_points="""
    [console_scripts]
    kvwatch = kvwatch.command:cmd
    """,
    zip_safe=False,
)
