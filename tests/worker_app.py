from conftest import Calculator
from offload.compute.decorators import compute
from offload.compute.registry import HandlerDescriptor


class ReportService:
    @compute(timeout_ms=2000)
    def double(self, x):
        return x * 2

    def plain(self, x):
        return x


def setup(service):
    service.locator.register(Calculator, Calculator())
    service.locator.register(ReportService, ReportService())
    service.register_handler("sum", HandlerDescriptor(Calculator, "sum"))


not_callable = 42
