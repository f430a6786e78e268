from setuptools import find_namespace_packages, setup


install_requires = (
    "aiohttp>=3.11.13",
    "yarl>=1.9.2",
    "neuro-logging>=21.8.4.1",
    "aiodocker>=0.27.0",
    "docker-image-py>=0.1.12",
)

tests_require = (
    "pytest>=7.4",
    "pytest-asyncio>=0.21",
)

setup(
    name="platform-image-builder",
    version="1.0.0",
    packages=find_namespace_packages(include=("platform_image_builder*",)),
    install_requires=install_requires,
    extras_require={"test": tests_require},
    python_requires=">=3.11.4",
    entry_points={
        "console_scripts": [
            "platform-image-builder=platform_image_builder.cli:main",
            "platform-docker-receive=platform_image_builder.cli:docker_receive_main",
            "platform-slug-artifact=platform_image_builder.cli:slug_artifact_main",
        ]
    },
    zip_safe=False,
)
