import time
from typing import Optional

import pydantic as pd

from kwalk.core.abstract.scenarios import BaseScenario, ScenarioSettings, Step
from kwalk.core.exceptions import VerificationFailed
from kwalk.core.models.kube import CronJob, Job
from kwalk.core.models.objects import ResourceRef


class CronJobScenarioSettings(ScenarioSettings):
    cronjob_name: str = pd.Field("echo-job", description="The name of the CronJob to deploy.")
    manual_job_prefix: str = pd.Field("echo-manual", description="Name prefix of the manually triggered Job.")
    manual_label: str = pd.Field("app=manual-backup", description="The key=value label put on the manual Job.")
    start_timeout: float = pd.Field(60, ge=0, description="How long to wait for the manual Job to start (in seconds).")
    start_interval: float = pd.Field(2, gt=0, description="Polling interval while waiting for the Job to start.")
    pod_attempts: int = pd.Field(12, ge=1, description="How many times to look for the pod of a Job.")
    pod_interval: float = pd.Field(5, gt=0, description="Delay between two pod lookups (in seconds).")
    pod_ready_timeout: float = pd.Field(60, ge=0, description="How long to wait for the pod to run (in seconds).")
    pod_ready_interval: float = pd.Field(2, gt=0, description="Polling interval while waiting for the pod to run.")
    completion_timeout: float = pd.Field(120, ge=0, description="How long to wait for the Job to complete (in seconds).")
    completion_interval: float = pd.Field(5, gt=0, description="Polling interval while waiting for completion.")
    monitor_schedule: bool = pd.Field(True, description="Whether to wait for the next scheduled run and follow it.")
    monitor_timeout: float = pd.Field(100, ge=0, description="How long to wait for a scheduled run (in seconds).")
    monitor_interval: float = pd.Field(5, gt=0, description="Polling interval while waiting for a scheduled run.")

    @pd.field_validator("manual_label")
    @classmethod
    def validate_manual_label(cls, v: str) -> str:
        key, sep, value = v.partition("=")
        if not sep or not key or not value:
            raise ValueError("Label must be in the key=value form")
        return v

    @property
    def manual_labels(self) -> dict[str, str]:
        key, _, value = self.manual_label.partition("=")
        return {key: value}


class CronJobScenario(BaseScenario[CronJobScenarioSettings]):
    """
    Deploys a CronJob, triggers a manual run from it and follows that run until it completes.
    Optionally waits for the next scheduled run and follows it as well.
    """

    display_name = "cronjob"

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.cronjob = self.ref("cronjob", self.settings.cronjob_name)
        self.manual_job: Optional[ResourceRef] = None

    def steps(self) -> list[Step]:
        steps = [
            Step(name="Cleanup existing resources", phase="cleanup", run=self.cleanup_existing),
            Step(name="Deploy CronJob", phase="apply", run=self.deploy),
            Step(name="Verify CronJob", phase="verify", strict=True, run=self.verify),
            Step(name="Trigger manual Job", phase="act", run=self.trigger_manual_job),
            Step(name="Wait for Job to start", phase="observe", strict=True, run=self.wait_for_start),
            Step(name="Follow Job logs", phase="observe", strict=True, run=self.follow_manual_job),
            Step(name="Wait for Job completion", phase="observe", strict=True, run=self.wait_for_completion),
            Step(name="Show Job status", phase="report", run=self.show_job_status),
        ]
        if self.settings.monitor_schedule:
            steps.append(Step(name="Monitor scheduled execution", phase="observe", strict=False, run=self.monitor))
        steps.append(Step(name="Final status", phase="report", run=self.final_status))
        return steps

    # Steps

    def cleanup_existing(self) -> None:
        self.remove(self.cronjob)
        self.remove_selected("job", self.settings.manual_label)

    def deploy(self) -> None:
        documents = self.load_manifest("cronjob.yml")
        for document in documents:
            document["metadata"]["name"] = self.settings.cronjob_name

        self.kubectl.apply_documents(documents)
        self.track(self.cronjob)
        self.wait_exists(self.cronjob)

    def verify(self) -> None:
        cronjob = self.kubectl.get_object(self.cronjob, CronJob)
        if cronjob.spec.suspend:
            raise VerificationFailed(f"{self.cronjob} is suspended")

        self.success(f"CronJob is active (schedule: {cronjob.spec.schedule})")
        self.show("CronJob Details", "cronjob", self.cronjob.name)

    def trigger_manual_job(self) -> None:
        name = f"{self.settings.manual_job_prefix}-{int(time.time())}"
        self.info(f"Creating manual Job {name} from {self.cronjob}")

        job = self.track(self.kubectl.create_from("job", name, self.cronjob))
        self.wait_exists(job)
        self.kubectl.label(job, self.settings.manual_labels)
        self.manual_job = job

    def _manual_job(self) -> ResourceRef:
        if self.manual_job is None:
            raise VerificationFailed("No manual Job was triggered")
        return self.manual_job

    def wait_for_start(self) -> None:
        job = self._manual_job()
        self.poller.wait(
            "Job to become active",
            lambda: self.kubectl.get_object(job, Job).started,
            timeout=self.settings.start_timeout,
            interval=self.settings.start_interval,
        )

    def _follow(self, job: ResourceRef) -> None:
        self.follower.follow(
            job,
            f"job-name={job.name}",
            attempts=self.settings.pod_attempts,
            interval=self.settings.pod_interval,
            ready_timeout=self.settings.pod_ready_timeout,
            ready_interval=self.settings.pod_ready_interval,
        )

    def follow_manual_job(self) -> None:
        self._follow(self._manual_job())

    def _finished(self, job: ResourceRef) -> bool:
        status = self.kubectl.get_object(job, Job)
        return status.complete or status.failed

    def wait_for_completion(self) -> None:
        job = self._manual_job()
        self.poller.wait(
            "Job to finish",
            lambda: self._finished(job),
            timeout=self.settings.completion_timeout,
            interval=self.settings.completion_interval,
        )
        if self.kubectl.get_object(job, Job).failed:
            raise VerificationFailed(f"{job} failed")

        self.success(f"{job} completed successfully")

    def show_job_status(self) -> None:
        job = self._manual_job()
        self.show("Job Status", "job", job.name)
        self.show("Job Pods", "pods", selector=f"job-name={job.name}")
        self.section("Job Details", self.kubectl.describe(job))

    def _scheduled_jobs(self) -> list[Job]:
        return [
            job
            for job in self.kubectl.list_objects("job", Job)
            if job.metadata.owned_by("CronJob", self.cronjob.name)
            and (self.manual_job is None or job.metadata.name != self.manual_job.name)
        ]

    def monitor(self) -> None:
        self.info(f"Waiting for the next scheduled run of {self.cronjob}")
        outcome = self.poller.wait(
            "Scheduled Job to be created",
            lambda: bool(self._scheduled_jobs()),
            timeout=self.settings.monitor_timeout,
            interval=self.settings.monitor_interval,
            strict=False,
        )
        if not outcome.met:
            return

        def created(job: Job) -> float:
            timestamp = job.metadata.creation_timestamp
            return timestamp.timestamp() if timestamp else 0.0

        latest = max(self._scheduled_jobs(), key=created)
        self.success(f"Automatic Job detected: {latest.metadata.name}")
        self._follow(self.ref("job", latest.metadata.name))

    def final_status(self) -> None:
        self.show("CronJob", "cronjob", self.cronjob.name)
        self.show("Jobs", "jobs", output="")
        self.show("Pods", "pods", output="")
