def pytest_configure(config):
    config.addinivalue_line("markers", "integration: talks to real providers, needs API keys")
