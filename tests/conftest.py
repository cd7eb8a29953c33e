import pytest

from node_repository.interface import Environment
from node_repository.maintenance.maintainer import JobControl
from tests.util import ProvisioningTester


@pytest.fixture
def tester() -> ProvisioningTester:
    """A production zone tester with no nodes"""
    return ProvisioningTester(Environment.prod)


@pytest.fixture
def job_control() -> JobControl:
    return JobControl()
