from setuptools import setup, find_packages

setup(
    name="ai-agent-flow",
    version="1.0.0",
    description="Pull request automation trigger that runs the AI code review and test generation flow",
    packages=find_packages(include=["agent_flow", "agent_flow.*"]),
    package_data={"agent_flow": ["agent_flow.yaml"]},
    python_requires=">=3.10",
    install_requires=[
        "PyGithub>=2.1.0",
        "fastapi>=0.115.0",
        "uvicorn[standard]>=0.30.0",
        "pyyaml>=6.0.1",
        "python-dotenv>=1.0.0",
        "requests>=2.31.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "httpx>=0.27.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "agent-flow=agent_flow.cli:main",
            "agent-flow-webhook=agent_flow.webhook_server:main",
        ],
    },
)
