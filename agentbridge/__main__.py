from agentbridge.main import run

run()
