"""
DeployForge - Completion Service Tests
======================================
"""

import json

import httpx
import pytest

from src.core.wizard.completion import (
    CompletionServiceError,
    ErrorType,
    HeuristicCompletionService,
    HttpCompletionService,
    StageContext,
    build_completion_service,
)


def make_context(**overrides) -> StageContext:
    values = dict(
        deployment_id="dep-1",
        stage_id="infrastructure",
        stage_name="Infrastructure",
        stage_description="Provision cloud resources",
        verification="terraform apply succeeded",
    )
    values.update(overrides)
    return StageContext(**values)


# ==========================================================================
# Heuristic service
# ==========================================================================

class TestHeuristicCompletionService:

    @pytest.mark.parametrize(
        "output,expected",
        [
            ('Error: Module not installed. Run "terraform init"', ErrorType.TERRAFORM_INIT_REQUIRED),
            ("Error acquiring the state lock", ErrorType.STATE_LOCK),
            ("Unable to locate credentials", ErrorType.CREDENTIALS),
            ("AccessDenied: not allowed", ErrorType.PERMISSION_DENIED),
            ("bind: address already in use", ErrorType.PORT_CONFLICT),
            ("sh: kubectl: command not found", ErrorType.NOT_FOUND),
            ("something odd happened", ErrorType.UNKNOWN),
        ],
    )
    def test_classify_error(self, output, expected):
        assert HeuristicCompletionService().classify_error(output) == expected

    async def test_diagnose_terraform_init(self):
        service = HeuristicCompletionService()

        result = await service.diagnose(
            "terraform plan", 'Please run "terraform init"', 1, make_context()
        )

        assert [c.command for c in result.fix_commands] == ["terraform init -input=false"]
        assert [c.command for c in result.retry_commands] == ["terraform plan"]
        assert result.analysis.startswith("terraform_init_required (exit 1)")

    async def test_diagnose_unknown_only_retries(self):
        service = HeuristicCompletionService()

        result = await service.diagnose("make deploy", "boom", 2, make_context())

        assert result.fix_commands == []
        assert [c.command for c in result.retry_commands] == ["make deploy"]

    async def test_generate_from_instructions(self):
        service = HeuristicCompletionService()
        context = make_context(instructions="Run:\n```bash\nterraform init\nterraform apply\n```\n")

        commands = await service.generate_commands(context)

        assert [c.command for c in commands] == ["terraform init", "terraform apply"]

    async def test_generate_without_instructions(self):
        assert await HeuristicCompletionService().generate_commands(make_context()) == []

    async def test_verify_nothing_executed(self):
        verdict = await HeuristicCompletionService().verify("", [], make_context())

        assert verdict.passed is False
        assert verdict.should_advance is False

    async def test_verify_resolved_failure_passes(self):
        executed = [
            {"command": "terraform apply", "exit_code": 1},
            {"command": "terraform init", "exit_code": 0},
            {"command": "terraform apply", "exit_code": 0},
        ]

        verdict = await HeuristicCompletionService().verify("", executed, make_context())

        assert verdict.passed is True
        assert verdict.analysis == "All 2 commands succeeded"

    async def test_verify_unresolved_failure(self):
        executed = [{"command": "npm test", "exit_code": 1}]

        verdict = await HeuristicCompletionService().verify("", executed, make_context())

        assert verdict.should_advance is False
        assert "npm test" in verdict.analysis


# ==========================================================================
# HTTP service
# ==========================================================================

def http_service(handler) -> tuple[HttpCompletionService, httpx.AsyncClient]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpCompletionService("http://assistant.test/", api_key="k", client=client), client


class TestHttpCompletionService:

    async def test_generate_commands_list(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"commands": [{"command": "docker build ."}]})

        service, client = http_service(handler)
        commands = await service.generate_commands(make_context())
        await client.aclose()

        assert [c.command for c in commands] == ["docker build ."]
        assert seen[0].url.path == "/generate-commands"
        assert seen[0].headers["Authorization"] == "Bearer k"
        assert json.loads(seen[0].content)["stage"]["stage_id"] == "infrastructure"

    async def test_generate_commands_markdown(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"content": "```sh\nnpm ci\n```"})

        service, client = http_service(handler)
        commands = await service.generate_commands(make_context())
        await client.aclose()

        assert [c.command for c in commands] == ["npm ci"]

    async def test_diagnose(self):
        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "analysis": f"{body['command']} needs init",
                    "fix_commands": [{"command": "terraform init"}],
                    "retry_commands": [{"command": body["command"]}],
                },
            )

        service, client = http_service(handler)
        result = await service.diagnose("terraform plan", "err", 1, make_context())
        await client.aclose()

        assert result.analysis == "terraform plan needs init"
        assert [c.command for c in result.fix_commands] == ["terraform init"]

    async def test_verify_requires_boolean(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"analysis": "looks fine"})

        service, client = http_service(handler)
        with pytest.raises(CompletionServiceError):
            await service.verify("log", [], make_context())
        await client.aclose()

    async def test_verify_defaults_should_advance(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"passed": True})

        service, client = http_service(handler)
        verdict = await service.verify("log", [], make_context())
        await client.aclose()

        assert verdict.should_advance is True

    async def test_http_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500)

        service, client = http_service(handler)
        with pytest.raises(CompletionServiceError, match="/diagnose"):
            await service.diagnose("ls", "", 1, make_context())
        await client.aclose()

    async def test_malformed_commands(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"commands": [{"reason": "no command"}]})

        service, client = http_service(handler)
        with pytest.raises(CompletionServiceError, match="Malformed"):
            await service.generate_commands(make_context())
        await client.aclose()


class TestBuildCompletionService:

    def test_heuristic_without_url(self, test_settings):
        assert isinstance(build_completion_service(test_settings), HeuristicCompletionService)

    def test_http_with_url(self, test_settings):
        config = test_settings.model_copy(update={"COMPLETION_API_URL": "http://assistant.test"})

        assert isinstance(build_completion_service(config), HttpCompletionService)
