"""Run ARQ worker. Usage: python -m badminton_signup.worker.run_worker"""

from arq import run_worker

from badminton_signup.worker.tasks import deliver_notification, get_redis_settings, shutdown, startup


class WorkerSettings:
    functions = [deliver_notification]
    redis_settings = get_redis_settings()
    on_startup = startup
    on_shutdown = shutdown
    max_tries = 3


def main() -> None:
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
