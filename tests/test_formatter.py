"""Tests for the message formatter: step rendering and upcoming days."""
from datetime import date

from models.schemas import FlowStep, StepOption
from templates.formatter import has_upcoming_days, render, upcoming_days

from conftest import TODAY


class TestRenderPlainStep:
    def test_options_appended_in_order(self):
        step = FlowStep(
            id="inicio",
            message="¿En qué te ayudamos?",
            options=[
                StepOption(key="A", label="Turnos", next_step_id="x"),
                StepOption(key="B", label="Precios", next_step_id="y"),
            ],
        )
        assert render(step, TODAY) == "¿En qué te ayudamos?\n\nA) Turnos\nB) Precios"

    def test_no_options_is_just_the_message(self):
        step = FlowStep(id="fin", message="Gracias por escribirnos.")
        assert render(step, TODAY) == "Gracias por escribirnos."

    def test_empty_message(self):
        step = FlowStep(id="x", options=[StepOption(key="A", label="Sí", next_step_id="y")])
        assert render(step, TODAY) == "A) Sí"


class TestUpcomingDays:
    def test_skips_sunday(self):
        days = upcoming_days(TODAY, 6)
        labels = [d.label for d in days]
        assert labels == [
            "Martes 23/01", "Miércoles 24/01", "Jueves 25/01",
            "Viernes 26/01", "Sábado 27/01", "Lunes 29/01",
        ]
        assert [d.letter for d in days] == ["A", "B", "C", "D", "E", "F"]

    def test_starts_tomorrow(self):
        days = upcoming_days(date(2024, 1, 27), 2)   # Saturday
        assert days[0].date == date(2024, 1, 29)
        assert days[1].date == date(2024, 1, 30)

    def test_count(self):
        assert len(upcoming_days(TODAY, 3)) == 3


class TestRenderUpcomingDays:
    def test_placeholder_replaced_and_options_not_listed(self, dental_content):
        step = dental_content.get_step("limpieza")
        assert has_upcoming_days(step)
        text = render(step, TODAY)
        assert "{PROXIMOS_DIAS}" not in text
        assert text.startswith("Elegí el día para tu limpieza:\nA) Martes 23/01\nB) Miércoles 24/01")
        assert text.endswith("F) Lunes 29/01")

    def test_plain_step_has_no_upcoming_days(self, dental_content):
        assert not has_upcoming_days(dental_content.get_step("inicio"))
