"""
External challenge-solving service integration.

This module provides a pluggable client layer for paid solving services.
The crawler never solves challenges itself: when a solver is configured,
challenge mitigation hands it the live page via ``solve_page`` and the
solver submits a task, polls for the result within a bounded timeout and
applies the returned token or cookies to the page.

Supported services:
- 2Captcha (reCAPTCHA-style site keys)
- CapSolver (PerimeterX "Press & Hold", sends cookies and user agent)
- Mock solver for tests and dry runs
"""
import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import aiohttp

logger = logging.getLogger(__name__)


class CaptchaType(Enum):
    """Types of challenges a service can be asked to handle."""
    RECAPTCHA_V2 = "recaptcha_v2"
    PERIMETERX = "perimeterx"


class SolverStatus(Enum):
    """Status of a solve request."""
    PENDING = "pending"
    PROCESSING = "processing"
    SOLVED = "solved"
    FAILED = "failed"
    TIMEOUT = "timeout"
    UNSUPPORTED = "unsupported"


@dataclass
class SolveResult:
    """Result from a solve attempt."""
    status: SolverStatus
    captcha_type: CaptchaType
    solution: Optional[str] = None  # Token to hand back to the page
    cookies: List[Dict[str, Any]] = field(default_factory=list)
    task_id: Optional[str] = None
    solve_time_seconds: float = 0.0
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "status": self.status.value,
            "captcha_type": self.captcha_type.value,
            "solution": self.solution,
            "cookies": len(self.cookies),
            "task_id": self.task_id,
            "solve_time_seconds": self.solve_time_seconds,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }


# Finds a PerimeterX app id or a reCAPTCHA site key in inline scripts
EXTRACT_SITE_KEY_JS = """
() => {
    for (const script of Array.from(document.querySelectorAll('script'))) {
        const content = script.textContent || '';
        const px = content.match(/appId["']?\\s*:\\s*["']([^"']+)["']/);
        if (px) return {type: 'perimeterx', key: px[1]};
        const rc = content.match(/sitekey["']?\\s*:\\s*["']([^"']+)["']/);
        if (rc) return {type: 'recaptcha_v2', key: rc[1]};
    }
    const el = document.querySelector('[data-sitekey]');
    if (el) return {type: 'recaptcha_v2', key: el.getAttribute('data-sitekey')};
    return null;
}
"""

# Hands a token to whichever success callback the page registered
INJECT_TOKEN_JS = """
(token) => {
    const callbacks = [window.captchaCallback, window.onCaptchaSuccess, window._pxOnCaptchaSuccess];
    for (const cb of callbacks) {
        if (typeof cb === 'function') { cb(token); return true; }
    }
    return false;
}
"""


class BaseCaptchaSolver(ABC):
    """
    Abstract base class for solving-service clients.

    Subclasses implement task submission and result polling; the base class
    runs the submit/poll loop under ``timeout_seconds`` and keeps statistics.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout_seconds: float = 120,
        poll_interval: float = 5.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize solver.

        Args:
            api_key: API key for the solving service
            timeout_seconds: Maximum time to wait for solution
            poll_interval: Seconds between status checks
            sleep: Async sleep function
            clock: Monotonic time source
        """
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock

        # Statistics
        self._total_requests = 0
        self._successful_solves = 0
        self._failed_solves = 0

    @property
    @abstractmethod
    def service_name(self) -> str:
        """Name of the solving service."""
        pass

    @property
    @abstractmethod
    def supported_types(self) -> list[CaptchaType]:
        """List of supported challenge types."""
        pass

    @abstractmethod
    async def _submit_task(
        self,
        captcha_type: CaptchaType,
        sitekey: str,
        page_url: str,
        **kwargs,
    ) -> str:
        """
        Submit a solving task.

        Returns task_id for tracking.
        """
        pass

    @abstractmethod
    async def _get_result(self, task_id: str, captcha_type: CaptchaType) -> SolveResult:
        """Get result for a submitted task."""
        pass

    async def solve(
        self,
        captcha_type: CaptchaType,
        sitekey: str,
        page_url: str,
        **kwargs,
    ) -> SolveResult:
        """
        Submit a task and poll until solved, failed or timed out.

        Args:
            captcha_type: Type of challenge
            sitekey: Site key or app id from the page
            page_url: URL where the challenge appears
            **kwargs: Additional service-specific options

        Returns:
            SolveResult with solution or error
        """
        if captcha_type not in self.supported_types:
            return SolveResult(
                status=SolverStatus.UNSUPPORTED,
                captcha_type=captcha_type,
                error=f"{self.service_name} does not support {captcha_type.value}",
            )

        self._total_requests += 1
        start_time = self._clock()

        try:
            task_id = await self._submit_task(
                captcha_type=captcha_type,
                sitekey=sitekey,
                page_url=page_url,
                **kwargs,
            )
            logger.info(f"{self.service_name} task submitted: {task_id}")

            elapsed = 0.0
            while elapsed < self.timeout_seconds:
                await self._sleep(self.poll_interval)
                elapsed = self._clock() - start_time

                result = await self._get_result(task_id, captcha_type)

                if result.status == SolverStatus.SOLVED:
                    result.solve_time_seconds = elapsed
                    self._successful_solves += 1
                    logger.info(
                        f"{self.service_name} solved {captcha_type.value} "
                        f"in {elapsed:.1f}s"
                    )
                    return result

                if result.status == SolverStatus.FAILED:
                    self._failed_solves += 1
                    logger.error(f"{self.service_name} failed: {result.error}")
                    return result

            self._failed_solves += 1
            logger.error(f"{self.service_name} timeout after {self.timeout_seconds}s")
            return SolveResult(
                status=SolverStatus.TIMEOUT,
                captcha_type=captcha_type,
                task_id=task_id,
                solve_time_seconds=elapsed,
                error=f"Timeout after {self.timeout_seconds}s",
            )

        except (aiohttp.ClientError, RuntimeError, KeyError, ValueError) as e:
            self._failed_solves += 1
            logger.error(f"{self.service_name} solve error: {e}")
            return SolveResult(
                status=SolverStatus.FAILED,
                captcha_type=captcha_type,
                error=str(e),
            )

    async def _page_task(self, page) -> Optional[Tuple[CaptchaType, str, Dict[str, Any]]]:
        """Work out what to submit for a live page, or None if nothing usable was found."""
        found = await page.evaluate(EXTRACT_SITE_KEY_JS)
        if not found:
            logger.error("Could not extract challenge site key")
            return None
        return CaptchaType(found["type"]), found["key"], {}

    async def _apply_solution(self, page, result: SolveResult) -> None:
        """Hand the solution to the page."""
        if result.solution:
            await page.evaluate(INJECT_TOKEN_JS, result.solution)
        if result.cookies:
            await page.context.add_cookies(result.cookies)

    async def solve_page(self, page) -> bool:
        """
        Solve the challenge shown on a live page.

        Args:
            page: Async Playwright Page

        Returns:
            True if the service returned a solution and it was applied
        """
        task = await self._page_task(page)
        if task is None:
            return False

        captcha_type, sitekey, options = task
        result = await self.solve(captcha_type, sitekey, page.url, **options)
        if result.status != SolverStatus.SOLVED:
            return False

        await self._apply_solution(page, result)
        return True

    def get_stats(self) -> Dict[str, Any]:
        """Get solver statistics."""
        return {
            "service": self.service_name,
            "total_requests": self._total_requests,
            "successful_solves": self._successful_solves,
            "failed_solves": self._failed_solves,
            "success_rate": (
                self._successful_solves / self._total_requests
                if self._total_requests > 0
                else 0.0
            ),
        }


class TwoCaptchaSolver(BaseCaptchaSolver):
    """
    2Captcha solving service integration.

    API Documentation: https://2captcha.com/2captcha-api
    """

    API_BASE = "https://2captcha.com"

    @property
    def service_name(self) -> str:
        return "2Captcha"

    @property
    def supported_types(self) -> list[CaptchaType]:
        return [CaptchaType.RECAPTCHA_V2]

    async def _submit_task(
        self,
        captcha_type: CaptchaType,
        sitekey: str,
        page_url: str,
        **kwargs,
    ) -> str:
        """Submit task to 2Captcha."""
        params = {
            "key": self.api_key,
            "json": 1,
            "method": "userrecaptcha",
            "googlekey": sitekey,
            "pageurl": page_url,
        }

        async with aiohttp.ClientSession() as session:
            async with session.post(f"{self.API_BASE}/in.php", data=params) as resp:
                data = await resp.json(content_type=None)

        if data.get("status") != 1:
            raise RuntimeError(f"2Captcha submit error: {data.get('error_text', data)}")

        return data["request"]

    async def _get_result(self, task_id: str, captcha_type: CaptchaType) -> SolveResult:
        """Get result from 2Captcha."""
        params = {
            "key": self.api_key,
            "action": "get",
            "id": task_id,
            "json": 1,
        }

        async with aiohttp.ClientSession() as session:
            async with session.get(f"{self.API_BASE}/res.php", params=params) as resp:
                data = await resp.json(content_type=None)

        if data.get("status") == 1:
            return SolveResult(
                status=SolverStatus.SOLVED,
                captcha_type=captcha_type,
                solution=data["request"],
                task_id=task_id,
            )

        error = data.get("request", "Unknown error")
        if error == "CAPCHA_NOT_READY":
            return SolveResult(
                status=SolverStatus.PROCESSING,
                captcha_type=captcha_type,
                task_id=task_id,
            )

        return SolveResult(
            status=SolverStatus.FAILED,
            captcha_type=captcha_type,
            task_id=task_id,
            error=error,
        )


class CapSolverSolver(BaseCaptchaSolver):
    """
    CapSolver integration for PerimeterX / HUMAN challenges.

    PerimeterX tasks need the page's cookies and user agent rather than a
    site key. A solved task may return a token, cookies, or both.

    API Documentation: https://docs.capsolver.com/
    """

    API_BASE = "https://api.capsolver.com"

    def __init__(self, api_key: Optional[str] = None, timeout_seconds: float = 120,
                 poll_interval: float = 3.0, **kwargs):
        super().__init__(api_key=api_key, timeout_seconds=timeout_seconds,
                         poll_interval=poll_interval, **kwargs)

    @property
    def service_name(self) -> str:
        return "CapSolver"

    @property
    def supported_types(self) -> list[CaptchaType]:
        return [CaptchaType.PERIMETERX, CaptchaType.RECAPTCHA_V2]

    async def _page_task(self, page) -> Optional[Tuple[CaptchaType, str, Dict[str, Any]]]:
        cookies = await page.context.cookies()
        user_agent = await page.evaluate("() => navigator.userAgent")
        return CaptchaType.PERIMETERX, "", {
            "cookies": "; ".join(f"{c['name']}={c['value']}" for c in cookies),
            "user_agent": user_agent,
        }

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        async with aiohttp.ClientSession() as session:
            async with session.post(f"{self.API_BASE}/{path}", json=payload) as resp:
                return await resp.json(content_type=None)

    async def _submit_task(
        self,
        captcha_type: CaptchaType,
        sitekey: str,
        page_url: str,
        **kwargs,
    ) -> str:
        """Create a CapSolver task."""
        if captcha_type == CaptchaType.PERIMETERX:
            task = {
                "type": "AntiTurnstileTaskProxyLess",
                "websiteURL": page_url,
                "websiteKey": sitekey,
                "metadata": {
                    "type": "perimeterx",
                    "cookies": kwargs.get("cookies", ""),
                    "userAgent": kwargs.get("user_agent", ""),
                },
            }
        else:
            task = {
                "type": "ReCaptchaV2TaskProxyLess",
                "websiteURL": page_url,
                "websiteKey": sitekey,
            }

        data = await self._post("createTask", {"clientKey": self.api_key, "task": task})
        if data.get("errorId") != 0:
            raise RuntimeError(f"CapSolver task creation failed: {data.get('errorDescription', data)}")
        return data["taskId"]

    async def _get_result(self, task_id: str, captcha_type: CaptchaType) -> SolveResult:
        data = await self._post("getTaskResult", {"clientKey": self.api_key, "taskId": task_id})

        if data.get("errorId") != 0:
            return SolveResult(
                status=SolverStatus.FAILED,
                captcha_type=captcha_type,
                task_id=task_id,
                error=data.get("errorDescription", "CapSolver error"),
            )

        status = data.get("status")
        if status == "ready":
            solution = data.get("solution") or {}
            return SolveResult(
                status=SolverStatus.SOLVED,
                captcha_type=captcha_type,
                solution=solution.get("token") or solution.get("gRecaptchaResponse"),
                cookies=list(solution.get("cookies") or []),
                task_id=task_id,
            )
        if status in ("idle", "processing"):
            return SolveResult(
                status=SolverStatus.PROCESSING,
                captcha_type=captcha_type,
                task_id=task_id,
            )

        return SolveResult(
            status=SolverStatus.FAILED,
            captcha_type=captcha_type,
            task_id=task_id,
            error=f"Unknown CapSolver status: {status}",
        )

    async def _apply_solution(self, page, result: SolveResult) -> None:
        await super()._apply_solution(page, result)
        # The solution only takes effect after the page reloads
        await page.wait_for_timeout(2000)
        await page.reload(wait_until="domcontentloaded")


class MockCaptchaSolver(BaseCaptchaSolver):
    """
    Mock solver for testing.

    Returns a fake solution once ``solve_delay`` seconds have passed since
    submission, or a failure when ``succeed`` is False.
    """

    def __init__(
        self,
        solve_delay: float = 2.0,
        succeed: bool = True,
        **kwargs,
    ):
        kwargs.setdefault("timeout_seconds", 30)
        kwargs.setdefault("poll_interval", 0.5)
        super().__init__(api_key="mock", **kwargs)
        self.solve_delay = solve_delay
        self.succeed = succeed
        self._task_start_times: Dict[str, float] = {}
        self.applied: List[str] = []

    @property
    def service_name(self) -> str:
        return "MockSolver"

    @property
    def supported_types(self) -> list[CaptchaType]:
        return list(CaptchaType)

    async def _page_task(self, page) -> Optional[Tuple[CaptchaType, str, Dict[str, Any]]]:
        return CaptchaType.PERIMETERX, "mock-key", {}

    async def _submit_task(
        self,
        captcha_type: CaptchaType,
        sitekey: str,
        page_url: str,
        **kwargs,
    ) -> str:
        task_id = str(uuid.uuid4())
        self._task_start_times[task_id] = self._clock()
        return task_id

    async def _get_result(self, task_id: str, captcha_type: CaptchaType) -> SolveResult:
        elapsed = self._clock() - self._task_start_times.get(task_id, 0)

        if elapsed < self.solve_delay:
            return SolveResult(
                status=SolverStatus.PROCESSING,
                captcha_type=captcha_type,
                task_id=task_id,
            )

        if not self.succeed:
            return SolveResult(
                status=SolverStatus.FAILED,
                captcha_type=captcha_type,
                task_id=task_id,
                error="Configured failure (mock)",
            )

        return SolveResult(
            status=SolverStatus.SOLVED,
            captcha_type=captcha_type,
            solution="mock-solution-token-" + task_id[:8],
            task_id=task_id,
        )

    async def _apply_solution(self, page, result: SolveResult) -> None:
        self.applied.append(result.solution)


# Factory functions
def get_solver(
    service: str = "2captcha",
    api_key: Optional[str] = None,
    **kwargs,
) -> BaseCaptchaSolver:
    """
    Get a solver instance.

    Args:
        service: Solver service name (2captcha, capsolver, mock)
        api_key: API key for the service
        **kwargs: Additional solver options

    Returns:
        Configured solver instance
    """
    service = service.lower()

    if service == "2captcha":
        return TwoCaptchaSolver(api_key=api_key, **kwargs)
    elif service == "capsolver":
        return CapSolverSolver(api_key=api_key, **kwargs)
    elif service == "mock":
        return MockCaptchaSolver(**kwargs)
    else:
        raise ValueError(f"Unknown solver service: {service}")


def create_solver_from_settings(settings) -> Optional[BaseCaptchaSolver]:
    """
    Build the configured solver, or None when solving is not configured.

    Args:
        settings: Object with CAPTCHA_SERVICE, CAPTCHA_API_KEY and CAPTCHA_TIMEOUT

    Returns:
        Solver instance or None
    """
    service = getattr(settings, "CAPTCHA_SERVICE", None)
    api_key = getattr(settings, "CAPTCHA_API_KEY", None)

    if not service:
        logger.info("No challenge solver configured, mitigation is backoff-only")
        return None
    if service.lower() != "mock" and not api_key:
        logger.warning(f"CAPTCHA_SERVICE={service} set without CAPTCHA_API_KEY, solver disabled")
        return None

    timeout = float(getattr(settings, "CAPTCHA_TIMEOUT", 120))
    if service.lower() == "mock":
        return get_solver("mock", timeout_seconds=timeout)
    return get_solver(service, api_key=api_key, timeout_seconds=timeout)
