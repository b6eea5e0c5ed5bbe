"""
Basic import checks for the agent, the tool layer and the web app.
"""

def test_agent_imports():
    """The agent package exposes the orchestrator and the claim helper."""
    import agent
    assert hasattr(agent, 'CodingAgent')
    assert callable(agent.CodingAgent)
    assert callable(agent.claim_session)


def test_tools_imports():
    import tools
    names = {d["name"] for d in tools.TOOL_DEFINITIONS}
    assert "git_push" in names
    assert names == set(tools.TOOL_IMPLEMENTATIONS)


def test_web_app_routes():
    """Every public route is registered on the FastAPI app."""
    from web import app
    paths = {route.path for route in app.routes}
    for path in ("/api/code", "/api/publish", "/api/diff", "/api/health",
                 "/api/terminal/run", "/api/terminal/cwd", "/api/files", "/api/file"):
        assert path in paths
