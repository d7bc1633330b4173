import warnings

# Ignore warnings from third-party media stacks
warnings.filterwarnings("ignore", category=DeprecationWarning, module="aiortc.*")
warnings.filterwarnings("ignore", category=DeprecationWarning, module="websockets.*")

# Import relay fixtures so they are available to all tests
from tests.fixtures.relay_fixtures import *  # noqa: E402, F403
