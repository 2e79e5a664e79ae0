import os

# The proxy refuses to start without a credential; give the test app one.
os.environ.setdefault("NIM_API_KEY", "test-key")
os.environ.setdefault("NIM_API_BASE", "https://nim.test/v1")
