"""예외, 로깅, 서명 등 공용 유틸리티."""
