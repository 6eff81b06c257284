import pytest
from pydantic import ValidationError
from capi_client.models import (
    CapiConfig,
    Deployment,
    Job,
    JobState,
    JobWarning,
    LastOperationState,
    PollPolicy,
    ServiceCredentialBinding,
    ServiceInstance,
)


def test_policy_requires_a_bound():
    with pytest.raises(ValidationError):
        PollPolicy(interval=1.0, success_states={"succeeded"})


@pytest.mark.parametrize(
    "overrides",
    [
        {"interval": 0},
        {"interval": -1.0},
        {"max_attempts": 0},
        {"timeout": 0},
        {"backoff_factor": 0.5},
        {"success_states": set()},
        {"failure_states": {"succeeded"}},
    ],
)
def test_policy_rejects_invalid_settings(overrides):
    settings = dict(interval=1.0, max_attempts=3, success_states={"succeeded"})
    settings.update(overrides)
    with pytest.raises(ValidationError):
        PollPolicy(**settings)


def test_policy_classifies_states():
    policy = PollPolicy.for_last_operation()
    assert policy.terminal_states == {"succeeded", "failed"}
    assert policy.is_terminal("failed")
    assert not policy.is_terminal("in progress")
    assert policy.is_success("succeeded")
    assert not policy.is_success("failed")


def test_policy_backoff_delays():
    policy = PollPolicy(
        interval=1.0,
        backoff_factor=2.0,
        max_delay=3.0,
        max_attempts=10,
        success_states={"COMPLETE"},
    )
    assert [policy.delay_for(attempt) for attempt in (1, 2, 3, 4)] == [1.0, 2.0, 3.0, 3.0]


def test_policy_fixed_delay_by_default():
    policy = PollPolicy(interval=0.5, timeout=10, success_states={"COMPLETE"})
    assert {policy.delay_for(attempt) for attempt in range(1, 6)} == {0.5}


def test_policy_delay_function_overrides_interval():
    policy = PollPolicy(
        interval=5.0, max_attempts=3, success_states={"COMPLETE"}, delay_function=lambda n: n / 10
    )
    assert policy.delay_for(3) == pytest.approx(0.3)


def test_presets_match_platform_defaults():
    jobs = PollPolicy.for_jobs()
    assert (jobs.interval, jobs.timeout, jobs.max_attempts) == (2.0, 300.0, None)
    assert jobs.success_states == {JobState.complete.value}

    instances = PollPolicy.for_last_operation()
    assert (instances.interval, instances.max_attempts) == (10.0, 30)

    bindings = PollPolicy.for_bindings()
    assert (bindings.interval, bindings.max_attempts) == (5.0, 20)
    assert bindings.failure_states == {LastOperationState.failed.value}

    deployments = PollPolicy.for_deployments()
    assert deployments.success_states == {"DEPLOYED"}
    assert deployments.failure_states == {"CANCELED", "SUPERSEDED", "DEGENERATE"}


def test_presets_accept_overrides():
    policy = PollPolicy.for_jobs(interval=0.1, timeout=1.0, max_attempts=4)
    assert (policy.interval, policy.timeout, policy.max_attempts) == (0.1, 1.0, 4)


def test_job_to_operation():
    job = Job.model_validate(
        {
            "guid": "job-1",
            "operation": "app.delete",
            "state": "FAILED",
            "errors": [{"code": 10008, "title": "CF-UnprocessableEntity", "detail": "boom"}],
            "links": {"self": {"href": "https://api.example.com/v3/jobs/job-1"}},
        }
    )
    operation = job.to_operation()
    assert operation.identifier == "job-1"
    assert operation.state == "FAILED"
    assert operation.description == "boom"
    assert operation.raw_response["operation"] == "app.delete"


def test_job_with_multiple_errors():
    job = Job(
        guid="job-2",
        state="FAILED",
        errors=[{"code": 1, "detail": "first"}, {"code": 2, "detail": "second"}],
    )
    assert job.error_summary() == "multiple errors:\n  1. first\n  2. second"
    assert Job(guid="job-3", state="COMPLETE").to_operation().description is None


def test_service_instance_to_operation():
    instance = ServiceInstance.model_validate(
        {
            "guid": "si-1",
            "name": "my-db",
            "type": "managed",
            "last_operation": {"type": "create", "state": "in progress", "description": ""},
        }
    )
    operation = instance.to_operation()
    assert operation.state == "in progress"
    assert operation.description is None


def test_resource_without_last_operation_is_settled():
    instance = ServiceInstance(guid="upsi-1", name="creds", type="user-provided")
    assert instance.to_operation().state == LastOperationState.succeeded.value

    binding = ServiceCredentialBinding(guid="binding-1")
    assert binding.to_operation().state == LastOperationState.succeeded.value


def test_binding_failure_description():
    binding = ServiceCredentialBinding.model_validate(
        {
            "guid": "binding-2",
            "type": "app",
            "last_operation": {"type": "create", "state": "failed", "description": "broker down"},
        }
    )
    operation = binding.to_operation()
    assert (operation.state, operation.description) == ("failed", "broker down")


def test_deployment_to_operation():
    deployment = Deployment.model_validate(
        {"guid": "dep-1", "status": {"value": "FINALIZED", "reason": "DEPLOYED", "details": {}}}
    )
    operation = deployment.to_operation()
    assert operation.state == "DEPLOYED"
    assert operation.description == "FINALIZED"


def test_operation_is_read_only():
    operation = Job(guid="job-4", state="PROCESSING").to_operation()
    with pytest.raises(ValidationError):
        operation.state = "COMPLETE"


def test_config_from_env():
    config = CapiConfig.from_env(
        {
            "CF_API": "https://api.sys.example.com",
            "CF_ACCESS_TOKEN": "abc",
            "CF_REQUEST_TIMEOUT": "12.5",
            "CF_SKIP_SSL_VALIDATION": "true",
        }
    )
    assert config.api_url == "https://api.sys.example.com"
    assert config.access_token == "abc"
    assert config.request_timeout == 12.5
    assert config.verify_ssl is False


def test_config_from_env_defaults():
    config = CapiConfig.from_env({"CF_API": "https://api.sys.example.com"})
    assert config.access_token is None
    assert config.request_timeout == 30.0
    assert config.verify_ssl is True


def test_config_from_env_requires_api():
    with pytest.raises(ValueError):
        CapiConfig.from_env({})


def test_job_warnings_are_typed():
    job = Job.model_validate(
        {"guid": "job-5", "state": "COMPLETE", "warnings": [{"detail": "stack deprecated"}]}
    )
    assert job.warnings == [JobWarning(detail="stack deprecated")]
