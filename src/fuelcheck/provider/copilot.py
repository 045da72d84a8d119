from fuelcheck.models import ProviderId, RawResponse, ResolvedCredential
from fuelcheck.provider.base import FetchContext, raw_response, request_json, secret_of

COPILOT_USER_URL = "https://api.github.com/copilot_internal/user"

# the internal endpoint only answers requests that look like the
# VS Code Copilot Chat extension
COPILOT_HEADERS: "dict[str, str]" = {
    "Accept": "application/json",
    "editor-version": "vscode/1.96.2",
    "editor-plugin-version": "copilot-chat/0.26.7",
    "user-agent": "GitHubCopilotChat/0.26.7",
    "x-github-api-version": "2025-04-01",
}


async def fetch_api(credential: "ResolvedCredential", context: "FetchContext") -> "RawResponse":
    headers = dict(COPILOT_HEADERS)
    headers["Authorization"] = f"token {secret_of(ProviderId.COPILOT, credential)}"

    payload = await request_json(context, ProviderId.COPILOT, "GET", COPILOT_USER_URL, headers=headers)
    return raw_response(ProviderId.COPILOT, credential, payload)
