"""탐지 엔진의 추상 기본 클래스."""

from __future__ import annotations

import abc
from typing import Any

from scanwatcher.detection.models import Alert
from scanwatcher.ingest.models import Observation


class DetectionEngine(abc.ABC):
    """Observation을 입력으로 받는 모든 탐지 엔진이 상속해야 하는 기본 클래스."""

    # 서브클래스에서 반드시 설정해야 함
    name: str = ""
    description: str = ""

    # 서브클래스에서 설정 스키마 정의: key -> (type, default) 튜플 또는 dict
    config_schema: dict[str, Any] = {}

    def __init__(self, config: dict[str, Any]) -> None:
        """엔진별 설정(config)으로 인스턴스를 초기화한다."""
        self.config  = config
        self.enabled = config.get("enabled", True)

    def option(self, key: str) -> Any:
        """설정 값을 조회하고, 없으면 config_schema의 기본값을 반환한다."""
        if key in self.config:
            return self.config[key]
        spec = self.config_schema.get(key)
        if isinstance(spec, dict):
            return spec.get("default")
        if spec is not None:
            return spec[1]
        return None

    def validate_config(self) -> list[str]:
        """config_schema에 대해 엔진 설정을 검증한다.

        잘못된 설정 값에 대한 경고 메시지 목록을 반환한다.
        tuple (type, default)과 dict {"type", "default", ...} 형식을 모두 지원한다.
        타입, min, max, choices 제약 조건을 검증한다.
        """
        warnings: list[str] = []
        for key, spec in self.config_schema.items():
            min_val = None
            max_val = None
            choices = None
            if isinstance(spec, dict):
                expected_type = spec.get("type", str)
                default       = spec.get("default")
                min_val       = spec.get("min")
                max_val       = spec.get("max")
                choices       = spec.get("choices")
            else:
                expected_type, default = spec

            val = self.config.get(key, default)
            if val is None:
                continue

            # 타입 검사
            if not isinstance(val, expected_type):
                # float 기대 위치에 int 허용
                if expected_type is float and isinstance(val, int):
                    pass  # 범위 검사로 이동
                else:
                    warnings.append(
                        f"{self.name}.{key}: expected {expected_type.__name__}, "
                        f"got {type(val).__name__} (value={val!r})"
                    )
                    continue

            if choices is not None and val not in choices:
                warnings.append(
                    f"{self.name}.{key}: value {val!r} is not one of {list(choices)}"
                )

            # 범위 검사 (숫자 타입만 해당)
            if isinstance(val, (int, float)) and not isinstance(val, bool):
                if min_val is not None and val < min_val:
                    warnings.append(
                        f"{self.name}.{key}: value {val!r} is below minimum {min_val}"
                    )
                if max_val is not None and val > max_val:
                    warnings.append(
                        f"{self.name}.{key}: value {val!r} is above maximum {max_val}"
                    )
        return warnings

    @abc.abstractmethod
    def process(self, observation: Observation) -> Alert | None:
        """단일 Observation을 분석한다.

        의심스러운 활동이 탐지되면 Alert를 반환하고, 그렇지 않으면 None을 반환한다.
        서로 다른 출발지에 대해서는 동시에 호출될 수 있다.
        """

    def shutdown(self) -> None:
        """엔진 종료 시 리소스 해제. 서브클래스에서 오버라이드."""
        pass

    def __repr__(self) -> str:
        """엔진의 문자열 표현을 반환한다."""
        return f"<{self.__class__.__name__} name={self.name!r} enabled={self.enabled}>"
