"""
Stdio Entrypoint - For MCP Client Integration
Runs the FastMCP server in stdio mode for direct LLM integration.
Logging goes to stderr; stdout carries the protocol.
"""
from n8n_deployer.main import create_mcp

if __name__ == "__main__":
    try:
        create_mcp().run()
    except KeyboardInterrupt:
        pass
