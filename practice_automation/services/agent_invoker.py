"""
AI agent invoker collaborator.

    invoke(agent_slug, input) -> dict     raises AgentInvocationError

The agents themselves live outside this service. RegistryAgentInvoker
dispatches to in-process callables (tests, local tooling);
HttpAgentInvoker posts to an agent gateway. Either is called by the
action executor on a worker thread, bounded by the action timeout.
"""

import logging

import requests

logger = logging.getLogger(__name__)


class AgentInvocationError(Exception):
    """The agent could not be reached or returned an error."""


class RegistryAgentInvoker:
    """Agents registered as plain callables ``fn(input: dict) -> dict``."""

    def __init__(self, agents=None):
        self._agents = dict(agents or {})

    def register(self, slug, fn):
        self._agents[slug] = fn
        return fn

    def invoke(self, agent_slug, input):
        fn = self._agents.get(agent_slug)
        if fn is None:
            raise AgentInvocationError(f"Unknown agent '{agent_slug}'")
        output = fn(dict(input))
        return output if isinstance(output, dict) else {"result": output}


class HttpAgentInvoker:
    """POST ``{gateway}/agents/<slug>/invoke`` with the input as JSON."""

    def __init__(self, gateway_url, *, api_key=None, timeout=30, session=None):
        self.gateway_url = gateway_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def invoke(self, agent_slug, input):
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        url = f"{self.gateway_url}/agents/{agent_slug}/invoke"
        try:
            resp = self.session.post(url, json={"input": dict(input)}, headers=headers,
                                     timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("Agent %s invocation failed: %s", agent_slug, exc)
            raise AgentInvocationError(str(exc)) from exc
        try:
            return resp.json()
        except ValueError as exc:
            raise AgentInvocationError(f"Agent {agent_slug} returned non-JSON output") from exc


def invoker_from_config(config):
    gateway = config.get("AI_AGENT_GATEWAY_URL")
    if gateway:
        return HttpAgentInvoker(gateway, api_key=config.get("AI_AGENT_API_KEY"))
    return RegistryAgentInvoker()
