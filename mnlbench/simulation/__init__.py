"""Simulation module: synthetic choice data with known ground truth."""
from .choice_data import ChoiceDataset, ChoiceDataSynthesizer, generate_choice_data
